from __future__ import annotations

import importlib
from typing import Optional, Protocol, runtime_checkable

import numpy as np

from .exceptions import ExtractorError


@runtime_checkable
class SignatureExtractor(Protocol):
    """Maps a BGR frame to a fixed-length signature, or None when no face is found."""

    def extract(self, image: np.ndarray) -> Optional[np.ndarray]:
        ...


def load_extractor(path: str) -> SignatureExtractor:
    """Load an extractor from ``"package.module:attribute"``.

    The attribute may be an extractor instance, or a class or zero-argument
    factory returning one.
    """
    module_name, sep, attr = path.partition(":")
    if not module_name or not sep or not attr:
        raise ExtractorError(f"Extractor path must look like 'package.module:attribute', got {path!r}.")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ExtractorError(f"Cannot import extractor module {module_name!r}: {exc}") from exc

    try:
        target = getattr(module, attr)
    except AttributeError as exc:
        raise ExtractorError(f"Module {module_name!r} has no attribute {attr!r}.") from exc

    extractor = target
    if isinstance(target, type) or (not isinstance(target, SignatureExtractor) and callable(target)):
        try:
            extractor = target()
        except Exception as exc:
            raise ExtractorError(f"Failed to initialize extractor {path!r}: {exc}") from exc

    if not isinstance(extractor, SignatureExtractor):
        raise ExtractorError(f"{path!r} does not provide an extract(image) method.")
    return extractor
