"""
Lazy access to the Azure Speech SDK, installed with the `azure` extra.
"""

import importlib.util

from .errors import UnavailableError


def speech_sdk_installed() -> bool:
    try:
        return importlib.util.find_spec("azure.cognitiveservices.speech") is not None
    except ModuleNotFoundError:
        return False


def load_speech_sdk():
    """
    Import azure.cognitiveservices.speech.

    Raises:
        UnavailableError: the SDK is not installed
    """
    try:
        import azure.cognitiveservices.speech as speechsdk
    except ImportError as e:
        raise UnavailableError(
            "Azure Speech SDK not found. Install with: pip install 'dictaflow[azure]'"
        ) from e
    return speechsdk
