"""Component and bundle bases for third-party modelling libraries.

Importing a submodule registers its bundle adapter:

- `tessera.extras.msgspec`: `MsgspecComponent`, `MsgspecBundle`
- `tessera.extras.pydantic`: `PydanticComponent`, `PydanticBundle`
"""
