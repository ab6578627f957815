"""Accelerator backend detection and the lookups that depend on it."""

from __future__ import annotations

import enum
import shutil
import sys
from pathlib import Path

from app.constants import CPU_OFFLOAD_LAYERS, GPU_OFFLOAD_LAYERS, SERVER_BINARY_NAMES


class Backend(str, enum.Enum):
    AUTO = "auto"
    CPU = "cpu"
    CUDA = "cuda"
    HIP = "hip"
    METAL = "metal"
    VULKAN = "vulkan"

    @classmethod
    def parse(cls, value: str | None) -> "Backend":
        key = (value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        return cls.AUTO


def _has(command: str) -> bool:
    return shutil.which(command) is not None


def guess_backend(platform: str | None = None) -> Backend:
    """Pick the most capable backend the host appears to support."""
    platform = platform or sys.platform
    if platform == "darwin":
        return Backend.METAL
    if platform.startswith("win"):
        return Backend.CUDA if _has("nvidia-smi") else Backend.CPU
    if _has("nvidia-smi"):
        return Backend.CUDA
    if _has("rocm-smi"):
        return Backend.HIP
    return Backend.VULKAN


def resolve_backend(backend: Backend) -> Backend:
    return guess_backend() if backend is Backend.AUTO else backend


def asset_patterns(backend: Backend, platform: str | None = None) -> tuple[str, ...]:
    """Release asset name fragments to try, in order, for ``backend``."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        if backend is Backend.CUDA:
            return ("win-cuda", "cudart-llama")
        if backend is Backend.HIP:
            return ("win-hip-radeon",)
        return ("win-cpu-x64",)
    if platform == "darwin":
        return ("macos-arm64", "macos-x64")
    if backend is Backend.VULKAN:
        return ("ubuntu-vulkan-x64",)
    if backend is Backend.CUDA:
        return ("cuda-ubuntu", "ubuntu-cuda", "cuda")
    return ("ubuntu-x64",)


def offload_layers(backend: Backend) -> str:
    """GPU layer count passed as ``-ngl``: everything on accelerators, nothing on CPU."""
    if backend is Backend.CPU:
        return CPU_OFFLOAD_LAYERS
    return GPU_OFFLOAD_LAYERS


def find_server_bin(directory: Path) -> Path | None:
    """Locate the server executable inside an unpacked runtime directory."""
    if not directory.is_dir():
        return None
    for name in SERVER_BINARY_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    # Release archives nest the binaries (e.g. build/bin/).
    for name in SERVER_BINARY_NAMES:
        for candidate in sorted(directory.rglob(name)):
            if candidate.is_file():
                return candidate
    return None


__all__ = [
    "Backend",
    "asset_patterns",
    "find_server_bin",
    "guess_backend",
    "offload_layers",
    "resolve_backend",
]
