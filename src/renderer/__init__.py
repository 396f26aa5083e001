"""Renderer package for resolving environment overlays into manifests."""

from .manifest_set import ManifestSet
from .renderer import Renderer, render

__all__ = ["ManifestSet", "Renderer", "render"]
