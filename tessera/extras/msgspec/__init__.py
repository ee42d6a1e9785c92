from .component import MsgspecBundle, MsgspecComponent

__all__ = ["MsgspecBundle", "MsgspecComponent"]
