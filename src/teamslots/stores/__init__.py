"""LocalStore and RemoteStore boundaries and their implementations."""

from teamslots.stores.http import HttpRemoteStore
from teamslots.stores.local import FileLocalStore, LocalStore, MemoryLocalStore, StorageKeys
from teamslots.stores.remote import MemoryRemoteStore, RemoteStore, WhereClause

__all__ = [
    "FileLocalStore",
    "HttpRemoteStore",
    "LocalStore",
    "MemoryLocalStore",
    "MemoryRemoteStore",
    "RemoteStore",
    "StorageKeys",
    "WhereClause",
]
