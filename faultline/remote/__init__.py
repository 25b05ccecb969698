"""
faultline Remote Execution

Command channels to cluster nodes, output parsers and bulk distribution.
"""

from faultline.remote.channel import RemoteChannel, SSHChannel, with_env
from faultline.remote.distribute import distribute
from faultline.remote.parsers import (
    Parser,
    parse_as_string,
    parse_as_trimmed,
    parse_json,
    parse_status,
)

__all__ = [
    "RemoteChannel",
    "SSHChannel",
    "with_env",
    "distribute",
    "Parser",
    "parse_as_string",
    "parse_as_trimmed",
    "parse_json",
    "parse_status",
]
