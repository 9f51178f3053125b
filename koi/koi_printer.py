"""
Formats Koi runtime values as text.

`to_str` is the form used when a value becomes part of an argv token or an
interpolated string; `pformat` quotes strings and is used inside containers
and for display.
"""
import collections.abc
import math

from koi.koi_datatypes import UserFunction, NativeFunction


class Printer:
    """Formats Koi values into readable strings."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def to_str(self, obj) -> str:
        """Unquoted text form of a value."""
        if isinstance(obj, str):
            return obj
        return self.pformat(obj)

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_vec
        return lambda o: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_num,
            float: self._pformat_num,
            bool: self._pformat_bool,
            type(None): self._pformat_nil,
            list: self._pformat_vec,
            dict: self._pformat_dict,
            UserFunction: self._pformat_user_function,
            NativeFunction: self._pformat_native_function,
        }

    def _pformat_num(self, obj):
        value = float(obj)
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        if value.is_integer():
            return str(int(value))
        return repr(value)

    def _pformat_str(self, obj):
        return f"'{obj}'"

    def _pformat_bool(self, obj):
        return "true" if obj else "false"

    def _pformat_nil(self, obj):
        return "nil"

    def _pformat_vec(self, obj):
        return "[" + ", ".join(self.pformat(v) for v in obj) + "]"

    def _pformat_dict(self, obj):
        items = ", ".join(f"{k}: {self.pformat(v)}" for k, v in obj.items())
        return "{" + items + "}"

    def _pformat_user_function(self, obj):
        return f"<func {obj.name}>"

    def _pformat_native_function(self, obj):
        return f"<native func {obj.name}>"
