[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunoffload"
version = "0.1.0"
description = "Packet helpers for TUN devices: Internet checksums, virtio-net headers, TCP receive coalescing and segmentation"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "virtio", "gro", "tso", "tcp", "offload", "checksum", "networking"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tunoffload"]

[tool.pytest.ini_options]
addopts = "-ra"
