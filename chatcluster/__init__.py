"""
chatcluster: a multi-process chat request router.

A round-robin balancer fronts a pool of FastAPI workers that relay chat
completion and TTS requests to an upstream AI API as server-sent events;
a supervisor process owns both.
"""

__version__ = "0.1.0"
