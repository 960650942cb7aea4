"""Skillshelf - skill package acquisition and lifecycle manager."""

__version__ = "0.1.0"

from skillshelf.config import Config
from skillshelf.manager import SkillManager

__all__ = ["Config", "SkillManager", "__version__"]
