"""Matchmaking and chat module.

Components:
    - SessionStore: token-keyed state that survives reconnects
    - ConnectionManager: live WebSockets and room channels
    - WaitingPool / Matcher: phased partner search
    - RoomRouter: partner messaging with offline buffering
    - MatchingEngine: owns all of the above, one per process
    - LifecycleSupervisor: connect, disconnect, grace and idle handling
"""
from .engine import MatchingEngine
from .lifecycle import LifecycleSupervisor

__all__ = ["MatchingEngine", "LifecycleSupervisor"]
