"""Storage for fetch state and cached calendar documents."""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from .config import AppConfig
from .models import FetchState

logger = logging.getLogger(__name__)


def replace_file(path: Path, content: bytes) -> None:
    """Write content to a temp file next to path, then swap it in."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class StateStore:
    """Manages fallback URLs and the last fetch time via config.json."""

    def __init__(self, data_dir: Path):
        self.state_file = data_dir / "config.json"
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def load(self, config: AppConfig, environ: Mapping[str, str] = os.environ) -> FetchState:
        """Load persisted state and resolve each identity's fallback URL.

        Environment values win over persisted values, which win over the
        URLs given in the settings file.
        """
        state = FetchState()
        if self.state_file.exists():
            try:
                with open(self.state_file, 'r', encoding='utf-8') as f:
                    state = FetchState(**json.load(f))
            except (TypeError, ValueError, ValidationError) as e:
                logger.error(f"Ignoring unreadable state file {self.state_file}: {e}")

        urls: Dict[str, str] = {}
        for name, identity in config.identities.items():
            url = environ.get(identity.env_var) or state.urls.get(name) or identity.ical_url
            urls[name] = url or ""
            logger.info(
                f"Fallback URL for {name}: {url[:50] + '...' if url else 'NOT SET'}"
            )
        state.urls = urls
        return state

    def save(self, state: FetchState) -> None:
        """Persist state; write errors propagate to the caller."""
        content = json.dumps(state.model_dump(mode='json'), indent=2).encode('utf-8')
        with self._lock:
            replace_file(self.state_file, content)


class CalendarStore:
    """Manages one cached iCal document per identity."""

    def __init__(self, data_dir: Path):
        self.calendars_dir = data_dir / "calendars"
        self.calendars_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def get_path(self, filename: str) -> Path:
        """Get path to the document file, refusing anything outside the store."""
        path = self.calendars_dir / filename
        if path.parent != self.calendars_dir or not filename.endswith(".ics"):
            raise ValueError(f"Invalid calendar filename: {filename!r}")
        return path

    def save(self, filename: str, document: str) -> None:
        path = self.get_path(filename)
        with self._lock:
            replace_file(path, document.encode('utf-8'))

    def load(self, filename: str) -> Optional[bytes]:
        path = self.get_path(filename)
        if not path.exists():
            return None
        with open(path, 'rb') as f:
            return f.read()

    def exists(self, filename: str) -> bool:
        path = self.get_path(filename)
        return path.exists() and path.stat().st_size > 0
