import logging
import os
import re
from typing import Any, Dict, Optional

import torch

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Saves and restores parameter dictionaries under string keys."""

    def __init__(self, root: str) -> None:
        self.root = root

    def path(self, key: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", key)
        return os.path.join(self.root, f"{safe}.pt")

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path(key))

    def save(self, key: str, state_dict: Dict[str, torch.Tensor], **meta: Any) -> str:
        os.makedirs(self.root, exist_ok=True)
        path = self.path(key)
        torch.save({"model_state_dict": state_dict, "meta": meta}, path)
        logger.info("Saved checkpoint %s -> %s", key, path)
        return path

    def load(self, key: str, device: Optional[torch.device] = None) -> Dict[str, Any]:
        """Returns ``{"model_state_dict": ..., "meta": ...}`` stored under ``key``."""
        checkpoint = torch.load(self.path(key), map_location=device or "cpu")
        checkpoint.setdefault("meta", {})
        logger.info("Loaded checkpoint %s", key)
        return checkpoint
