from collections.abc import Iterable
from typing import Any

import msgspec

from ...bundle import register_bundle_adapter
from ...registry import register_component_base


class MsgspecComponent(msgspec.Struct):
    """Base class for defining components based on msgspec.Struct

    Subclasses of `MsgspecComponent` are registered as components on first use.
    """

    pass


class MsgspecBundle(msgspec.Struct):
    """Base class for declaring bundles based on msgspec.Struct

    Every field of a subclass holds one component value.
    """

    pass


class MsgspecBundleAdapter:
    def is_applicable(self, obj: Any) -> bool:
        return isinstance(obj, MsgspecBundle)

    def values(self, obj: MsgspecBundle) -> Iterable[Any]:
        return msgspec.structs.astuple(obj)


register_component_base(MsgspecComponent)
register_bundle_adapter(MsgspecBundleAdapter())
