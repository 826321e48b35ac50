"""Agents package: provides the extraction agent base class, the vision agent and the JSON extractor."""

from .base import BaseAgent  # noqa: F401
from .json_extractor import extract_json  # noqa: F401
from .vision_agent import VisionAgent  # noqa: F401
