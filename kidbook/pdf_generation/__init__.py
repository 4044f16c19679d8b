"""
PDF assembly for finished storybooks.
"""

from .builder import (
    DEFAULT_LAYOUT,
    PAGE_SIZES,
    DocumentAssembler,
    DocumentPage,
    PageLayoutConfig,
    StorybookPDFBuilder,
)

__all__ = [
    "DEFAULT_LAYOUT",
    "PAGE_SIZES",
    "DocumentAssembler",
    "DocumentPage",
    "PageLayoutConfig",
    "StorybookPDFBuilder",
]
