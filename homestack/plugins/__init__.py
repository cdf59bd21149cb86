"""
Health check plugins.

Third-party packages contribute checks through the `homestack.checks`
entry-point group. Each entry point resolves to a factory called with
(config, controller) that returns an iterable of Check instances.
"""
import importlib.metadata
from typing import TYPE_CHECKING, Any, List

from ..config import StackConfig
from ..services import ServiceController
from ..ui import render_status

if TYPE_CHECKING:
    from ..checks import CheckRegistry

ENTRY_POINT_GROUP = "homestack.checks"


def validate_check(check: Any) -> bool:
    """Ensure a plugin object honours the Check contract."""
    from ..checks import Check

    if not isinstance(check, Check):
        return False
    for attr in ("name", "category", "timeout_status"):
        if not getattr(check, attr, None):
            return False
    return callable(getattr(check, "run", None))

def load_check_plugins(config: StackConfig, controller: ServiceController, registry: "CheckRegistry") -> List[str]:
    """Discover plugin factories and register their checks. Returns loaded plugin names."""
    loaded: List[str] = []
    for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP):
        try:
            factory = ep.load()
            checks = list(factory(config, controller))
        except Exception as e:
            render_status("warn", f"Failed to load check plugin '{ep.name}': {e}", "yellow")
            continue

        for check in checks:
            if not validate_check(check):
                render_status("warn", f"Plugin '{ep.name}' returned an invalid check: {check!r}", "yellow")
                continue
            try:
                registry.register(check)
            except ValueError as e:
                render_status("warn", f"Plugin '{ep.name}': {e}", "yellow")
        loaded.append(ep.name)
    return loaded
