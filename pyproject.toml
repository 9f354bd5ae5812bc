[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modbusone"
version = "0.1.0"
description = "Modbus RTU and TCP clients and servers built on one shared handler interface, with serial failover support"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["modbus", "rtu", "tcp", "serial", "crc", "industrial", "failover"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: System :: Networking",
    "Topic :: Terminals :: Serial",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
modbusone-memory = "modbusone.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["modbusone"]

[tool.hatch.build.targets.sdist]
include = ["modbusone", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
