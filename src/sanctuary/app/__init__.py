"""Application runtime package."""

from sanctuary.app.runtime import AppRuntime, CollectingSink, MentorSession, OperatorSession, TurnSink

__all__ = ["AppRuntime", "CollectingSink", "MentorSession", "OperatorSession", "TurnSink"]
