from __future__ import annotations

from typing import Any, Mapping

import tomli
import tomli_w


def load_toml_text(text: str) -> dict[str, Any]:
    return tomli.loads(text)


def dump_toml_to_str(data: Mapping[str, Any], indent: int = 2) -> str:
    return tomli_w.dumps(data, indent=indent)
