"""
Analyzers - Interfaces for turning images and audio into text.

Concrete clients for third-party AI platforms are registered by the host
application; the engine only knows the interfaces and looks analyzers up by
platform name.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict

from .errors import UnsupportedAnalysisError


logger = logging.getLogger(__name__)


class ImageAnalyzer(ABC):
    """Describes an image as searchable text."""

    @abstractmethod
    async def analyze_image(self, model: str, path: Path | str) -> str:
        pass


class AudioAnalyzer(ABC):
    """Transcribes or describes an audio file."""

    @abstractmethod
    async def analyze_audio(self, model: str, path: Path | str) -> str:
        pass


class AnalyzerRegistry:
    """Platform name -> analyzers."""

    def __init__(self):
        self._image: Dict[str, ImageAnalyzer] = {}
        self._audio: Dict[str, AudioAnalyzer] = {}

    def register_image(self, platform: str, analyzer: ImageAnalyzer) -> None:
        self._image[platform] = analyzer

    def register_audio(self, platform: str, analyzer: AudioAnalyzer) -> None:
        self._audio[platform] = analyzer

    def image_analyzer(self, platform: str) -> ImageAnalyzer:
        try:
            return self._image[platform]
        except KeyError:
            raise UnsupportedAnalysisError(
                f"Model platform '{platform}' does not support image analysis"
            ) from None

    def audio_analyzer(self, platform: str) -> AudioAnalyzer:
        try:
            return self._audio[platform]
        except KeyError:
            raise UnsupportedAnalysisError(
                f"Model platform '{platform}' does not support audio analysis"
            ) from None
