"""ChatItNow backend: anonymous 1:1 chat matching over WebSockets.

The ASGI application lives at ``chatitnow.main:app``; ``create_app`` builds
a fresh one with its own matching engine.
"""
