"""Build tier selection and image building."""

from .builder import BuildResult, ContainerBuilder, image_tags, render_recipe
from .strategy import (
    AppCapabilities,
    AppType,
    BuildPlan,
    BuildTier,
    classify_app_type,
    detect_app_type,
    select_build_tier,
)

__all__ = [
    "AppCapabilities",
    "AppType",
    "BuildPlan",
    "BuildResult",
    "BuildTier",
    "ContainerBuilder",
    "classify_app_type",
    "detect_app_type",
    "image_tags",
    "render_recipe",
    "select_build_tier",
]
