"""ScreenSync — relays new screenshots from a storage backend to a consumer.

Watches a remote folder (or a local synced folder) for new media,
converts it into a payload the consumer can ingest, sends it over a
persistent relay connection and removes the source copy once the
consumer confirms receipt.
"""

__version__ = "1.0.0"
__app_name__ = "ScreenSync"
