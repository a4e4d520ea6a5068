[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orbisfself"
version = "0.1.0"
description = "Convert x86-64 ELF executables and shared objects into Orbis ELF and fake signed ELF (FSELF) images"
requires-python = ">=3.10"
dependencies = []
keywords = ["elf", "fself", "orbis", "oelf", "nid", "toolchain", "linker"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
create-fself = "orbisfself.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["orbisfself"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
