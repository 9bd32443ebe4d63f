# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Server environment values carried in App Store payloads."""

from enum import Enum
from typing import Union


class Environment(str, Enum):
    SANDBOX = "Sandbox"
    PRODUCTION = "Production"
    XCODE = "Xcode"
    LOCAL_TESTING = "LocalTesting"

    @classmethod
    def from_raw(cls, value: Union["Environment", str]) -> Union["Environment", str]:
        """Map a wire value to a member, keeping unrecognised strings as-is."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return value


def raw_value(value: Union[Environment, str, None]) -> Union[str, None]:
    """The wire string for an environment-typed value."""
    if isinstance(value, Environment):
        return value.value
    return value
