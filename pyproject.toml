[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ptpaddons"
version = "0.1.0"
description = "Hardware plugins for a PTP daemon: reference plugin, E810 DPLL clock chains, delay compensation and VPD parsing"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["ptp", "ieee1588", "linuxptp", "dpll", "e810", "time synchronization", "grandmaster", "boundary clock"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Time Synchronization",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ptpaddons"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
