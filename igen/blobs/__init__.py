"""Artifact blob storage."""

from igen.blobs.store import Blob, BlobStore, FileBlobStore, get_blob_store

__all__ = ["Blob", "BlobStore", "FileBlobStore", "get_blob_store"]
