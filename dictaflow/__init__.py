"""
DictaFlow - Dictation with interchangeable speech providers.

This package provides:
- Recognition through a local whisper.cpp server, OpenAI, Groq or Parakeet MLX
- A supervisor that keeps the local server running and adopts it across restarts
- Progressive (streaming) transcription with silence gating
- Word-timestamp merging for providers that return word timings
- Hot-swapping providers when settings change
- Text-to-speech through Piper or OpenAI

Main entry point: python -m dictaflow
"""

__version__ = "1.0.0"
