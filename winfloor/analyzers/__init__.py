"""
Winfloor Analyzers
===================

Platform-version conversion, the API map, the API-set fallback policy,
import classification and the secondary build signals.
"""

from winfloor.analyzers.platform import platform_to_build
from winfloor.analyzers.api_map import ApiMap, ApiMapBuilder
from winfloor.analyzers.apiset import ApiSetPolicy
from winfloor.analyzers.classifier import Classifier, combine_signals
from winfloor.analyzers.signals import header_signal, known_dll_signal

__all__ = [
    "platform_to_build",
    "ApiMap",
    "ApiMapBuilder",
    "ApiSetPolicy",
    "Classifier",
    "combine_signals",
    "header_signal",
    "known_dll_signal",
]
