[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "efivarkit"
version = "0.1.0"
description = "Read and write UEFI variables through efivarfs, walk EFI signature lists and validate GUID partition tables"
requires-python = ">=3.10"
dependencies = []
keywords = ["uefi", "efi", "efivarfs", "gpt", "guid", "secure boot", "signature list"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
    "Topic :: System :: Filesystems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["efivarkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
