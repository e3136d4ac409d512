"""Handler resolution - turn a ``handlerRef`` into a callable.

A handler reference has the form ``<target>:<attr>``. The target is
either a path to a ``.py`` file (relative paths are resolved against a
base directory, normally the artifact's) or a dotted module path.

The registry takes the resolver as a parameter, so hosts that package
handlers differently can supply their own.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import inspect
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from toolrail.core.errors import HandlerResolutionError

if TYPE_CHECKING:
    from collections.abc import Callable

HANDLER_ATTR = "execute"

# Handler file -> sys.modules name of the version last executed
_file_modules: dict[Path, str] = {}


def split_ref(handler_ref: str) -> tuple[str, str]:
    """Split ``target:attr``; the attribute defaults to ``execute``."""
    target, sep, attr = handler_ref.rpartition(":")
    if not sep or not target:
        return handler_ref, HANDLER_ATTR
    # Windows drive letters ("C:\\tools\\x.py") have no attribute part
    if len(target) == 1 and attr.startswith(("\\", "/")):
        return handler_ref, HANDLER_ATTR
    return target, attr


def _module_name_for(path: Path, source: bytes) -> str:
    digest = hashlib.sha256(str(path).encode("utf-8") + b"\0" + source).hexdigest()[:12]
    return f"_toolrail_handler_{path.parent.name.replace('-', '_')}_{digest}"


def _load_file_module(path: Path, handler_ref: str) -> Any:
    """Import the handler file at *path*, once per distinct file content.

    An edited file is executed again under a new module name and the
    module for its previous content is evicted, so a rebuild followed by
    :meth:`ToolRegistry.reload` binds the new code.
    """
    if not path.is_file():
        raise HandlerResolutionError(handler_ref, f"file not found: {path}")
    try:
        source = path.read_bytes()
    except OSError as e:
        raise HandlerResolutionError(handler_ref, f"cannot read {path}: {e}") from e
    name = _module_name_for(path, source)
    if name in sys.modules:
        return sys.modules[name]
    stale = _file_modules.pop(path, None)
    if stale is not None:
        sys.modules.pop(stale, None)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise HandlerResolutionError(handler_ref, f"cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        # Executed from the bytes just hashed, never from a cached .pyc
        exec(compile(source, str(path), "exec"), module.__dict__)
    except Exception as e:
        sys.modules.pop(name, None)
        raise HandlerResolutionError(handler_ref, f"import failed: {e}") from e
    _file_modules[path] = name
    return module


def default_resolver(handler_ref: str, base_dir: Path | None = None) -> Callable[..., Any]:
    """Resolve *handler_ref* to the exported callable.

    Raises:
        HandlerResolutionError: If the module cannot be imported or the
            attribute is missing or not callable.
    """
    target, attr = split_ref(handler_ref)

    if target.endswith(".py"):
        path = Path(target)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        module = _load_file_module(path.resolve(), handler_ref)
    else:
        try:
            module = importlib.import_module(target)
        except ImportError as e:
            raise HandlerResolutionError(handler_ref, f"import failed: {e}") from e

    fn = getattr(module, attr, None)
    if fn is None:
        raise HandlerResolutionError(handler_ref, f"module does not export {attr!r}")
    if not callable(fn):
        raise HandlerResolutionError(handler_ref, f"{attr!r} is not callable")
    return fn


def check_handler_signature(fn: Callable[..., Any]) -> str | None:
    """Return a problem description, or None if *fn* is a valid handler.

    A handler is an ``async def`` taking exactly one positional argument
    (the execution context).
    """
    if not inspect.iscoroutinefunction(fn):
        return "handler must be an async function"
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return "handler signature cannot be inspected"
    positional = [
        p
        for p in sig.parameters.values()
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    required_kw = [
        p
        for p in sig.parameters.values()
        if p.kind == inspect.Parameter.KEYWORD_ONLY and p.default is inspect.Parameter.empty
    ]
    if len(positional) != 1 or required_kw:
        return f"handler must take exactly one argument (ctx), got {sig}"
    return None
