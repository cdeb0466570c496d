"""Helper to build VM images and kernels and to run them under QEMU."""

__version__ = "0.1.0"