from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict

from ...bundle import register_bundle_adapter
from ...registry import register_component_base


class PydanticComponent(BaseModel):
    """Base class for defining components based on pydantic.BaseModel

    Subclasses of `PydanticComponent` are registered as components on first use.
    """

    model_config = ConfigDict(validate_assignment=True)


class PydanticBundle(BaseModel):
    """Base class for declaring bundles based on pydantic.BaseModel

    Every field of a subclass holds one component value.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)


class PydanticBundleAdapter:
    def is_applicable(self, obj: Any) -> bool:
        return isinstance(obj, PydanticBundle)

    def values(self, obj: PydanticBundle) -> Iterable[Any]:
        return [getattr(obj, name) for name in type(obj).model_fields]


register_component_base(PydanticComponent)
register_bundle_adapter(PydanticBundleAdapter())
