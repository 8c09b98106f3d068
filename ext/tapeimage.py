"""bfstream extension: render the final tape as a grayscale PNG.

Each touched cell becomes one pixel column; intensity is the cell value
reduced mod 256, the same reduction the output instruction uses. The image
is written when the program ends normally. The path comes from the
``BFSTREAM_TAPE_IMAGE`` environment variable (default ``tape.png``) and the
pixel height from ``BFSTREAM_TAPE_IMAGE_HEIGHT`` (default 16).
"""

from __future__ import annotations

import os
from typing import Any

import numpy as np

from extensions import BFExtensionError, ExtensionAPI


BFSTREAM_EXTENSION_NAME = "tapeimage"
BFSTREAM_EXTENSION_API_VERSION = 1

DEFAULT_PATH = "tape.png"
DEFAULT_HEIGHT = 16


def tape_pixels(interpreter: Any, height: int) -> np.ndarray:
    low, high = interpreter.tape.bounds()
    row = np.mod(interpreter.tape.window(low, high), 256).astype(np.uint8)
    return np.tile(row, (height, 1))


def save_tape_image(interpreter: Any, path: str, height: int = DEFAULT_HEIGHT) -> str:
    from PIL import Image

    if height <= 0:
        raise BFExtensionError("tapeimage: height must be positive")
    pixels = tape_pixels(interpreter, height)
    Image.fromarray(pixels).save(path, format="PNG")
    return path


def _on_program_end(interpreter: Any) -> None:
    path = os.environ.get("BFSTREAM_TAPE_IMAGE", DEFAULT_PATH)
    raw_height = os.environ.get("BFSTREAM_TAPE_IMAGE_HEIGHT", str(DEFAULT_HEIGHT))
    try:
        height = int(raw_height)
    except ValueError:
        raise BFExtensionError(f"tapeimage: invalid height '{raw_height}'")
    save_tape_image(interpreter, path, height)


def bfstream_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="tapeimage", version="0.1.0")
    ext.on_event("program_end", _on_program_end)
