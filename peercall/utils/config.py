"""Read TOML config files into Pydantic models.

Relay and participant settings may live in separate files or share one
file under `[relay]` and `[participant]` tables:

```toml title="peercall.toml"
[relay]
port = 3001

[relay.logging]
current_client_interval = 60

[participant]
relay_address = "ws://localhost:3001"

[participant.call]
display_name = "Alice"
```
"""

from __future__ import annotations

import sys
from typing import Any
from typing import BinaryIO
from typing import TypeVar

from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib


BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def load(
    model: type[BaseModelT],
    fp: BinaryIO,
    table: str | None = None,
) -> BaseModelT:
    """Parse TOML from a binary file to a model.

    Args:
        model: Config model type to parse TOML using.
        fp: File-like bytes stream to read in.
        table: Optional dotted name of the table holding the model's
            options (e.g., `'relay'`). The whole document is used if `None`.

    Returns:
        Model initialized from the TOML file.
    """
    return loads(model, fp.read().decode(), table=table)


def loads(
    model: type[BaseModelT],
    data: str,
    table: str | None = None,
) -> BaseModelT:
    """Parse a TOML string to a model.

    Keys which do not correspond to a field of the model are rejected by
    models configured with `extra='forbid'`, which all relay and
    participant configs are, and ignored otherwise.

    Args:
        model: Config model type to parse TOML using.
        data: TOML string to parse.
        table: Optional dotted name of the table holding the model's
            options. A missing table yields a model with default values.

    Returns:
        Model initialized from the TOML string.

    Raises:
        ValueError: If `table` names a key which is not a table.
    """
    parsed: Any = tomllib.loads(data)
    if table is not None:
        for key in table.split('.'):
            parsed = parsed.get(key, {})
            if not isinstance(parsed, dict):
                raise ValueError(
                    f'Expected [{table}] to be a table but got '
                    f'{type(parsed).__name__}.',
                )
    return model.model_validate(parsed)
