"""Static metadata document returned by `describe()`."""

from __future__ import annotations

import copy
from typing import Any, Dict

from .records import ENSURE_VALUES

PROVIDER_NAME = "ssh_authorized_key::keysync"

_METADATA: Dict[str, Any] = {
    "provider": {
        "name": PROVIDER_NAME,
        "type": "ssh_authorized_key",
        "invoke": "simple",
        "actions": ["get", "set"],
        "suitable": True,
        "desc": "Manages SSH authorized keys through a structured authorized_keys lens.",
    },
    "attributes": {
        "name": {
            "desc": "Unique name of the key; stored as the entry comment.",
            "type": "string",
            "kind": "namevar",
        },
        "ensure": {
            "desc": "Whether the key should be present or absent.",
            "type": "enum[" + ", ".join(sorted(ENSURE_VALUES)) + "]",
        },
        "key": {
            "desc": "Public key material, without whitespace.",
            "type": "string",
        },
        "type": {
            "desc": "Key algorithm, e.g. ssh-rsa or ssh-ed25519.",
            "type": "string",
        },
        "user": {
            "desc": "Account whose key file holds the entry.",
            "type": "string",
        },
        "options": {
            "desc": "Key options, each a flag or name=value.",
            "type": "array[string]",
        },
        "target": {
            "desc": "Absolute path of the key file holding the entry.",
            "type": "string",
            "kind": "r",
        },
    },
}


def metadata() -> Dict[str, Any]:
    return copy.deepcopy(_METADATA)
