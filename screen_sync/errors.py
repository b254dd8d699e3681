"""Exception types shared across the relay engine."""


class ScreenSyncError(Exception):
    """Base class for all engine errors."""


class StartupError(ScreenSyncError):
    """A watcher cannot start: missing configuration or folder provisioning failed.

    Fatal for the watcher process, which exits with ``EXIT_CONFIG_ERROR``
    so the supervisor backs off instead of restarting it in a tight loop.
    """


class StorageError(ScreenSyncError):
    """A remote storage call failed (listing, download, delete, create)."""


class RemoteNotFoundError(StorageError):
    """The remote object does not exist (already deleted or never existed)."""


class ConversionError(ScreenSyncError):
    """An image conversion failed or the external converter is unavailable."""


# Process exit codes understood by the supervisor
EXIT_OK = 0
EXIT_CRASH = 1
EXIT_CONFIG_ERROR = 2
