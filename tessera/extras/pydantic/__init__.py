from .component import PydanticBundle, PydanticComponent

__all__ = ["PydanticBundle", "PydanticComponent"]
