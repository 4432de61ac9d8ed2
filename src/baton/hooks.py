"""Run lifecycle hooks.

Hooks are pluggy plugins. Either subclass ``RunHooks`` and override the
callbacks you need, or decorate methods of any object with ``hookimpl``.
``HookRuntime`` dispatches every callback to all registered plugins in
registration order and isolates failures: a hook that raises is logged and
never interrupts the run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pluggy
from loguru import logger

if TYPE_CHECKING:
    from .agent import Agent
    from .items import CallItem

BATON_HOOK_NAMESPACE = "baton"
hookspec = pluggy.HookspecMarker(BATON_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(BATON_HOOK_NAMESPACE)


class RunHookSpecs:
    """Hook contract for run lifecycle observers."""

    @hookspec
    def on_agent_start(self, context: Any, agent: Agent) -> None:
        """An agent becomes active for a turn sequence."""

    @hookspec
    def on_agent_end(self, context: Any, agent: Agent, output: Any) -> None:
        """An agent produced the final output of the run."""

    @hookspec
    def on_handoff(self, context: Any, from_agent: Agent, to_agent: Agent) -> None:
        """Control moves from one agent to another."""

    @hookspec
    def on_tool_start(self, context: Any, agent: Agent | None, call: CallItem) -> None:
        """A tool call or action is about to run."""

    @hookspec
    def on_tool_end(self, context: Any, agent: Agent | None, call: CallItem, result: Any) -> None:
        """A tool call or action returned."""

    @hookspec
    def on_tool_error(self, context: Any, agent: Agent | None, call: CallItem, error: Exception) -> None:
        """A tool call or action failed."""


HOOK_NAMES = frozenset(name for name in vars(RunHookSpecs) if name.startswith("on_"))


class RunHooks:
    """Lifecycle callbacks for a run. Subclass and override what you need."""

    def on_agent_start(self, context: Any, agent: Agent) -> None:
        pass

    def on_agent_end(self, context: Any, agent: Agent, output: Any) -> None:
        pass

    def on_handoff(self, context: Any, from_agent: Agent, to_agent: Agent) -> None:
        pass

    def on_tool_start(self, context: Any, agent: Agent | None, call: CallItem) -> None:
        pass

    def on_tool_end(self, context: Any, agent: Agent | None, call: CallItem, result: Any) -> None:
        pass

    def on_tool_error(self, context: Any, agent: Agent | None, call: CallItem, error: Exception) -> None:
        pass


class _RunHookManager(pluggy.PluginManager):
    """Plugin manager that also accepts undecorated ``RunHooks`` overrides."""

    def parse_hookimpl_opts(self, plugin: Any, name: str) -> Any:
        opts = super().parse_hookimpl_opts(plugin, name)
        if opts is None and isinstance(plugin, RunHooks) and name in HOOK_NAMES:
            return {
                "wrapper": False,
                "hookwrapper": False,
                "optionalhook": False,
                "tryfirst": False,
                "trylast": False,
                "specname": None,
            }
        return opts


class HookRuntime:
    """Safe wrapper around pluggy dispatch of run lifecycle hooks."""

    def __init__(self, *plugins: Any) -> None:
        self._plugin_manager = _RunHookManager(BATON_HOOK_NAMESPACE)
        self._plugin_manager.add_hookspecs(RunHookSpecs)
        for index, plugin in enumerate(plugins):
            if plugin is None or self._plugin_manager.is_registered(plugin):
                continue
            self._plugin_manager.register(plugin, name=f"{type(plugin).__name__}-{index}")

    @classmethod
    def coerce(cls, hooks: Any) -> HookRuntime:
        if isinstance(hooks, HookRuntime):
            return hooks
        return cls(hooks)

    def notify(self, hook_name: str, **kwargs: Any) -> None:
        """Call every implementation of ``hook_name``, logging the ones that raise."""
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None:
            return
        for impl in hook.get_hookimpls():
            call_kwargs = {name: kwargs[name] for name in impl.argnames if name in kwargs}
            try:
                impl.function(**call_kwargs)
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.failed hook={} adapter={}",
                    hook_name,
                    impl.plugin_name or "<unknown>",
                )

    def hook_report(self) -> dict[str, list[str]]:
        report: dict[str, list[str]] = {}
        for hook_name in sorted(HOOK_NAMES):
            adapters = [impl.plugin_name for impl in getattr(self._plugin_manager.hook, hook_name).get_hookimpls()]
            if adapters:
                report[hook_name] = adapters
        return report

    def on_agent_start(self, context: Any, agent: Agent) -> None:
        self.notify("on_agent_start", context=context, agent=agent)

    def on_agent_end(self, context: Any, agent: Agent, output: Any) -> None:
        self.notify("on_agent_end", context=context, agent=agent, output=output)

    def on_handoff(self, context: Any, from_agent: Agent, to_agent: Agent) -> None:
        self.notify("on_handoff", context=context, from_agent=from_agent, to_agent=to_agent)

    def on_tool_start(self, context: Any, agent: Agent | None, call: CallItem) -> None:
        self.notify("on_tool_start", context=context, agent=agent, call=call)

    def on_tool_end(self, context: Any, agent: Agent | None, call: CallItem, result: Any) -> None:
        self.notify("on_tool_end", context=context, agent=agent, call=call, result=result)

    def on_tool_error(self, context: Any, agent: Agent | None, call: CallItem, error: Exception) -> None:
        self.notify("on_tool_error", context=context, agent=agent, call=call, error=error)
