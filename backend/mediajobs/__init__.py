"""
mediajobs: local media-acquisition job engine.

Downloads a media URL, extracts audio, transcribes it offline and packs
the results, reporting live progress over an in-process event bus.
"""

__version__ = "0.1.0"
