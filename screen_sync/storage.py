"""Remote storage contract consumed by the remote watchers.

The engine never talks to a provider SDK directly.  A backend is plugged
in through a factory named in the config's ``storage_clients`` table, as
``"package.module:callable"``.  The callable receives the ``Config`` and
returns a :class:`RemoteStorageClient`.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

from screen_sync.errors import StartupError
from screen_sync.models import ListPage

if TYPE_CHECKING:
    from screen_sync.config import Config
    from screen_sync.modes import SyncMode

logger = logging.getLogger(__name__)


class RemoteStorageClient(ABC):
    """Minimal operations a storage backend must provide.

    Implementations raise :class:`~screen_sync.errors.StorageError` for
    transient failures and :class:`~screen_sync.errors.RemoteNotFoundError`
    when the referenced file or folder does not exist.
    """

    @abstractmethod
    def list_folder(
        self,
        folder_id: str,
        *,
        created_after: datetime | None = None,
        page_token: str | None = None,
        page_size: int = 100,
    ) -> ListPage:
        """Return one page of the folder's files, oldest first."""

    @abstractmethod
    def download(self, file_id: str) -> bytes:
        """Return the full content of a file."""

    @abstractmethod
    def delete(self, file_id: str) -> None:
        """Delete a file."""

    @abstractmethod
    def create_folder(self, name: str, parent_id: str) -> str:
        """Create *name* under *parent_id*, or find it if it exists; return its id."""


def load_client(config: Config, mode: SyncMode) -> RemoteStorageClient:
    """Build the storage client configured for *mode*.

    Raises StartupError when no factory is configured or it cannot be
    imported; a watcher cannot run without its backend.
    """
    target = config.storage_client_factory(mode)
    if not target:
        raise StartupError(
            f"No storage client configured for {mode.label}. "
            f"Set storage_clients.{mode.value} in {config.path} "
            "to a 'package.module:factory' path."
        )
    module_name, _, attr = target.partition(":")
    if not attr:
        module_name, _, attr = target.rpartition(".")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError, ValueError) as exc:
        raise StartupError(
            f"Cannot load storage client {target!r} for {mode.label}: {exc}"
        ) from exc

    try:
        client = factory(config)
    except Exception as exc:
        raise StartupError(
            f"Storage client factory {target!r} failed: {exc}. "
            "Check the backend credentials."
        ) from exc
    if not isinstance(client, RemoteStorageClient):
        raise StartupError(
            f"{target!r} returned {type(client).__name__}, "
            "not a RemoteStorageClient"
        )
    logger.info("Loaded %s storage client from %s", mode.label, target)
    return client
