"""Template pack discovery and rendering."""

from .pack import TemplatePack, TemplatePackRegistry, load_pack
from .renderer import RenderedTree, TemplateRenderer
from .substitution import RenderPlan, build_context, plan_render

__all__ = [
    "RenderPlan",
    "RenderedTree",
    "TemplatePack",
    "TemplatePackRegistry",
    "TemplateRenderer",
    "build_context",
    "load_pack",
    "plan_render",
]
