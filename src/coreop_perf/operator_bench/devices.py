"""CPU/GPU array backends.

CPU execution uses NumPy. GPU execution uses CuPy, which is an optional
dependency (`pip install coreop-perf[gpu]`); GPU cases are skipped when it is
not installed or no CUDA device is visible.
"""

from __future__ import annotations

import importlib
import importlib.util
from types import ModuleType
from typing import Any

import numpy as np


def gpu_available() -> bool:
    if importlib.util.find_spec("cupy") is None:
        return False
    cp = importlib.import_module("cupy")
    try:
        return int(cp.cuda.runtime.getDeviceCount()) > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False


def array_module(is_gpu: bool) -> ModuleType:
    if not is_gpu:
        return np
    if not gpu_available():
        raise RuntimeError("GPU execution requested but CuPy with a visible CUDA device is not available")
    return importlib.import_module("cupy")


def synchronize(xp: ModuleType) -> None:
    if xp is not np:
        xp.cuda.Device().synchronize()


def to_numpy(a: Any) -> np.ndarray:
    if isinstance(a, np.ndarray):
        return a
    return a.get()


def gpu_device_info() -> dict[str, Any]:
    if not gpu_available():
        return {"available": False}
    cp = importlib.import_module("cupy")
    props = cp.cuda.runtime.getDeviceProperties(0)
    name = props.get("name", b"unknown")
    return {
        "available": True,
        "device_name": name.decode(errors="replace") if isinstance(name, bytes) else str(name),
        "device_count": int(cp.cuda.runtime.getDeviceCount()),
        "cupy_version": str(cp.__version__),
    }
