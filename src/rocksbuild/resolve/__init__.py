"""Platform and feature resolution for rocksbuild."""

from .compiler_config import CompilerConfig, Define
from .feature_resolver import FeatureFlagResolver, FeatureResolution, KNOWN_FEATURES
from .platform_resolver import OSFamily, PlatformResolution, PlatformResolver

__all__ = [
    "CompilerConfig",
    "Define",
    "FeatureFlagResolver",
    "FeatureResolution",
    "KNOWN_FEATURES",
    "OSFamily",
    "PlatformResolution",
    "PlatformResolver",
]
