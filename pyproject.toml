[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cronovm"
version = "0.4.0"
description = "Embeddable register virtual machine: loader and interpreter for CVM1 binary images"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "virtual-machine",
    "interpreter",
    "bytecode",
    "emulator",
    "embedding",
    "sandbox",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
    "Topic :: Software Development :: Interpreters",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cronovm"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
