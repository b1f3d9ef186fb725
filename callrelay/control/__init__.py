from callrelay.control.takeover import TakeoverStateMachine

__all__ = ["TakeoverStateMachine"]
