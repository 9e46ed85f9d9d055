"""
Keystroke Gate Core Processors

Public exports for feature engineering processors.
"""

from core.processors.keyboard import FeatureVector, KeyboardProcessor

__all__ = [
    "FeatureVector",
    "KeyboardProcessor",
]
