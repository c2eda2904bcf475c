"""
Atomic JSON checkpoint storage.

Used for the segment cache checkpoint and the continuity state, both of
which must survive a crash mid-write.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    JSON file with crash-resistant writes.

    Writes go to a temporary file which is then atomically renamed over the
    target, so readers only ever see a complete document.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def save(self, data: dict) -> None:
        """
        Save data atomically.

        Raises:
            OSError: If the file cannot be written (temp file is cleaned up)
            TypeError: If data is not JSON serialisable
        """
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
            logger.debug(f"Checkpoint saved to {self.path}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save checkpoint {self.path}: {e}")
            try:
                if tmp.exists():
                    tmp.unlink()
            except OSError:
                pass
            raise

    def load(self) -> Optional[dict]:
        """
        Load the checkpoint.

        Returns:
            The stored dict, or None if the file is missing, unreadable or corrupt
        """
        if not self.path.exists():
            logger.debug(f"No checkpoint found at {self.path}")
            return None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load checkpoint {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring checkpoint {self.path}: not a JSON object")
            return None
        return data
