from .loader import load_project
from .types import ConfigError, ProjectConfig, UnitSpec

__all__ = ["load_project", "ProjectConfig", "UnitSpec", "ConfigError"]
