"""Scalar data types understood by the front-end."""

from __future__ import annotations

import numbers
from enum import Enum

from .errors import TlangTypeError


class DataType(str, Enum):
    i8 = "int8"
    i16 = "int16"
    i32 = "int32"
    i64 = "int64"
    u8 = "uint8"
    u16 = "uint16"
    u32 = "uint32"
    u64 = "uint64"
    f32 = "float32"
    f64 = "float64"
    u1 = "bool"
    unknown = "unknown"

    @property
    def is_float(self) -> bool:
        return self in (DataType.f32, DataType.f64)

    @property
    def is_integral(self) -> bool:
        return self not in (DataType.f32, DataType.f64, DataType.unknown)

    @property
    def is_signed(self) -> bool:
        return self in (DataType.i8, DataType.i16, DataType.i32, DataType.i64, DataType.f32, DataType.f64)

    @property
    def bits(self) -> int:
        return _BITS[self]


_BITS = {
    DataType.i8: 8,
    DataType.i16: 16,
    DataType.i32: 32,
    DataType.i64: 64,
    DataType.u8: 8,
    DataType.u16: 16,
    DataType.u32: 32,
    DataType.u64: 64,
    DataType.f32: 32,
    DataType.f64: 64,
    DataType.u1: 1,
    DataType.unknown: 0,
}


def data_type_name(dt: DataType) -> str:
    return DataType(dt).value


def data_type_short_name(dt: DataType) -> str:
    return DataType(dt).name


def as_data_type(value: object) -> DataType:
    """Accept a ``DataType``, its long name or its short name."""
    if isinstance(value, DataType):
        return value
    if isinstance(value, str):
        if value in DataType.__members__:
            return DataType[value]
        try:
            return DataType(value)
        except ValueError:
            pass
    raise TlangTypeError(f"Unknown data type {value!r}")


def data_type_of_constant(value: object) -> DataType:
    # bool is an int subclass; check it first.
    if isinstance(value, bool):
        return DataType.u1
    if isinstance(value, numbers.Integral):
        return DataType.i32
    if isinstance(value, numbers.Real):
        return DataType.f32
    raise TlangTypeError(f"Constant of type {type(value).__name__} is not a supported scalar")


def promote_types(a: DataType, b: DataType) -> DataType:
    """Binary promotion: floats win, otherwise the wider integer (signed on ties)."""
    if a == DataType.unknown or b == DataType.unknown:
        return DataType.unknown
    if a == b:
        return a
    if a.is_float or b.is_float:
        floats = [dt for dt in (a, b) if dt.is_float]
        return max(floats, key=lambda dt: dt.bits)
    if a.bits != b.bits:
        return a if a.bits > b.bits else b
    return a if a.is_signed else b
