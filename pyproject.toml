[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sshpull"
version = "1.0.1"
description = "One-way mirroring of a remote directory to a local one over SSH and rsync, with polling and hash-based watch modes"
requires-python = ">=3.10"
keywords = ["ssh", "rsync", "mirror", "sync", "backup", "watch"]
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
    "Topic :: System :: Archiving :: Mirroring",
]
dependencies = [
    "pyyaml>=6.0",
    "paramiko>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[project.scripts]
sshpull = "sshpull.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sshpull"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
