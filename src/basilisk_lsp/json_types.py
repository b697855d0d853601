from __future__ import annotations

"""JSON value types for JSON-RPC frames exchanged with clangd.

Frames are decoded with the standard ``json`` module and only narrowed to
``lsprotocol`` types at the editor boundary, so the bridge itself speaks in
these aliases.
"""

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
JSONArray: TypeAlias = list[JSONValue]

RequestId: TypeAlias = int | str
"""JSON-RPC correlation id; ours are ints, the peer may use strings."""
