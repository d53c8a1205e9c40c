"""
Local artifacts read by downstream CI steps.

- ``error``: the last fatal error message of a run (read by the PR comment step)
- ``ip``: the provisioned environment's reachable address (deleted on teardown)
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


ERROR_FILE = "error"
ADDRESS_FILE = "ip"


class ArtifactStore:
    """Plain-text artifacts under one directory."""

    def __init__(self, root: Path = Path(".")):
        self.root = Path(root)

    @property
    def error_path(self) -> Path:
        return self.root / ERROR_FILE

    @property
    def address_path(self) -> Path:
        return self.root / ADDRESS_FILE

    def write_error(self, message: str) -> None:
        """Best-effort write of the error artifact; failures are only logged."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.error_path.write_text(message)
        except OSError as e:
            logger.error("Failed to write error to %s: %s", self.error_path, e)

    def read_error(self) -> Optional[str]:
        return _read(self.error_path)

    def clear_error(self) -> None:
        self.error_path.unlink(missing_ok=True)

    def write_address(self, address: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.address_path.write_text(address)

    def read_address(self) -> Optional[str]:
        return _read(self.address_path)

    def clear_address(self) -> bool:
        """Remove the address artifact. Returns True if one was removed."""
        if not self.address_path.exists():
            return False
        self.address_path.unlink()
        logger.info("Removed address file %s", self.address_path)
        return True


def _read(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    text = path.read_text().strip()
    return text or None
