[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ansibleoperator"
version = "0.1.0"
description = "Drive ansible-runner for Kubernetes custom resources mapped by a watches file"
requires-python = ">=3.10"
keywords = ["ansible", "ansible-runner", "kubernetes", "operator", "watches"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ansible-operator = "ansibleoperator.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ansibleoperator"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
