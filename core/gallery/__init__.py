# ============================================================
# Biometric Matching Core
# core/gallery/__init__.py
# ============================================================

from core.gallery.gallery_store import GalleryEntry, GalleryStore

__all__ = [
    "GalleryEntry",
    "GalleryStore",
]
