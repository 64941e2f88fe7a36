[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cci_migrator"
version = "0.1.0"
description = "Migrate SAST ignores into asset-level ignore policies: gather, plan, execute, retest and clean up."
requires-python = ">=3.10"
dependencies = []
keywords = ["sast", "ignores", "policies", "migration", "security", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cci_migrator"]

[tool.hatch.build.targets.sdist]
include = ["cci_migrator", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
