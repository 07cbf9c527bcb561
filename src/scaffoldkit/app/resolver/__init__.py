"""Template reference resolution."""

from .service import FetchOptions, ResolvedTemplate, TemplateLocation, TemplateResolver

__all__ = ["FetchOptions", "ResolvedTemplate", "TemplateLocation", "TemplateResolver"]
