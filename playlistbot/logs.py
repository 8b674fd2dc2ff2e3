import json
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

RUN_ID_VAR: ContextVar[str] = ContextVar("run_id", default="")


def log(level: str, msg: str, **details: Any) -> None:
    prefix = {
        "info": "[info]",
        "warning": "[warning]",
        "critical": "[critical]",
    }.get(level, "[info]")
    ctx = {}
    run_id = RUN_ID_VAR.get()
    if run_id:
        ctx["run_id"] = run_id
    payload = {**ctx, **details} if details or ctx else None
    suffix = f" {json.dumps(payload, sort_keys=True, default=str)}" if payload else ""
    print(f"{prefix} {msg}{suffix}")


@contextmanager
def run_context(run_id: Optional[str] = None) -> Iterator[str]:
    value = run_id or uuid.uuid4().hex
    token = RUN_ID_VAR.set(value)
    try:
        yield value
    finally:
        RUN_ID_VAR.reset(token)
