"""
Blob storage for evidence frames, addressed by opaque handles.

The event log only ever carries the handle, never image bytes.
"""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Optional

from .biometrics import FrameAnalysis
from .utils import ImageLike, encode_jpeg, load_image
from .visualization import annotate_evidence

LOGGER = logging.getLogger(__name__)

_HANDLE_RE = re.compile(r"^evidence/[0-9a-f]{32}\.jpg$")


class EvidenceStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put(
        self,
        frame: ImageLike,
        label: Optional[str] = None,
        analysis: Optional[FrameAnalysis] = None,
    ) -> str:
        """
        Store a frame as JPEG and return its handle. With a label, face
        boxes and the label are burned into the stored copy.
        """
        if label is None and isinstance(frame, (bytes, bytearray)):
            payload = bytes(frame)
            # Make sure we were given an image before keeping it.
            load_image(payload)
        else:
            image = load_image(frame)
            if label is not None:
                image = annotate_evidence(image, analysis, label)
            payload = encode_jpeg(image)
        filename = f"{uuid.uuid4().hex}.jpg"
        (self.root / filename).write_bytes(payload)
        handle = f"evidence/{filename}"
        LOGGER.debug("Stored evidence %s (%d bytes)", handle, len(payload))
        return handle

    def resolve(self, handle: str) -> Path:
        """
        Map a handle back to a file path.

        Raises:
            KeyError: Malformed or unknown handle.
        """
        if not _HANDLE_RE.match(handle or ""):
            raise KeyError(handle)
        path = self.root / handle.split("/", 1)[1]
        if not path.exists():
            raise KeyError(handle)
        return path

    def read(self, handle: str) -> bytes:
        return self.resolve(handle).read_bytes()
