"""
Device utilities for running and timing attention kernels.

Provides helpers for device detection, seeding, and the synchronization and
memory probes needed to time banded vs dense attention fairly on CUDA,
MPS (Apple Silicon) and CPU.
"""

import torch
from typing import Tuple


def _cuda_description() -> str:
    # ROCm builds expose AMD GPUs through the torch.cuda API
    gpu_name = torch.cuda.get_device_name(0).lower()
    if 'amd' in gpu_name or 'radeon' in gpu_name:
        return "CUDA (AMD GPU via ROCm)"
    return "CUDA (NVIDIA GPU)"


def autodetect_device() -> Tuple[torch.device, str]:
    """
    Pick the best available device.

    Preference order: CUDA/ROCm > MPS > CPU

    Returns:
        device: torch.device object
        device_name: Human-readable device description
    """
    if torch.cuda.is_available():
        return torch.device("cuda"), _cuda_description()
    elif torch.backends.mps.is_available():
        return torch.device("mps"), "MPS (Apple Silicon GPU)"
    else:
        return torch.device("cpu"), "CPU"


def get_device(device_type: str = None) -> Tuple[torch.device, str]:
    """
    Get a specific device or autodetect.

    Args:
        device_type: "cuda", "mps", "cpu", or None for autodetect

    Returns:
        device: torch.device object
        device_name: Human-readable device description

    Raises:
        RuntimeError: If requested device is not available
        ValueError: If device_type is not a known device
    """
    if device_type is None or device_type == "":
        return autodetect_device()

    device_type = device_type.lower()

    if device_type == "cuda":
        if not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Install CUDA-enabled PyTorch.")
        return torch.device("cuda"), _cuda_description()
    elif device_type == "mps":
        if not torch.backends.mps.is_available():
            raise RuntimeError("MPS requested but not available. Requires macOS 12.3+ and Apple Silicon.")
        return torch.device("mps"), "MPS (Apple Silicon GPU)"
    elif device_type == "cpu":
        return torch.device("cpu"), "CPU"
    else:
        raise ValueError(f"Invalid device type: {device_type}. Must be 'cuda', 'mps', 'cpu', or None.")


def init_device(device_type: str = None, seed: int = 42) -> Tuple[torch.device, str]:
    """
    Select a device and seed the random generators so that randomly
    initialized attention weights are reproducible.

    Args:
        device_type: "cuda", "mps", "cpu", or None for autodetect
        seed: Random seed

    Returns:
        device: torch.device object
        device_name: Human-readable device description
    """
    device, device_name = get_device(device_type)

    torch.manual_seed(seed)
    if device.type == "cuda":
        torch.cuda.manual_seed(seed)
        # Full fp32 matmuls; TF32 would blur the banded vs dense comparison
        torch.backends.cuda.matmul.allow_tf32 = False

    return device, device_name


def get_synchronize_fn(device_type: str):
    """
    Device-specific synchronization for accurate timing.

    Args:
        device_type: "cuda", "mps", or "cpu"

    Returns:
        Function that blocks until queued kernels have finished
    """
    if device_type == "cuda":
        return torch.cuda.synchronize
    elif device_type == "mps":
        return torch.mps.synchronize
    else:
        return lambda: None


def get_memory_stats_fn(device_type: str):
    """
    Device-specific peak memory probe.

    Args:
        device_type: "cuda", "mps", or "cpu"

    Returns:
        Function returning peak (CUDA) or current (MPS) allocated bytes; 0 on CPU
    """
    if device_type == "cuda":
        return torch.cuda.max_memory_allocated
    elif device_type == "mps":
        return torch.mps.current_allocated_memory
    else:
        return lambda: 0


def reset_memory_stats(device_type: str):
    """Reset the peak memory counter before a measurement (CUDA only)."""
    if device_type == "cuda":
        torch.cuda.reset_peak_memory_stats()
