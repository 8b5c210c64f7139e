"""
Rule Registry: the set of validators the Execution Engine runs.

A rule is any object exposing ``name``, ``category``, ``priority`` and
``evaluate(action, parameters)``. ``evaluate`` may be a plain function or a
coroutine function. ``parameters`` is a dict of the rule's current parameter
values keyed by short name (``{"timeout": 3000, ...}``).

Rules are registered directly or discovered from the ``hook_kernel.rules``
entry-point group.
"""

import inspect
import logging
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, List, Optional

from hook_kernel.models.action import Action, RuleResult
from hook_kernel.models.chain import RuleEntry

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "hook_kernel.rules"
ALL_CATEGORIES = "*"


class BaseRule:
    """
    Convenience base class. Subclasses set the class attributes and
    override evaluate().
    """

    name: str = ""
    category: str = ALL_CATEGORIES
    priority: int = 100
    depends_on: List[str] = []
    description: Optional[str] = None
    default_parameters: Dict[str, Any] = {}

    def evaluate(self, action: Action, parameters: Dict[str, Any]) -> RuleResult:
        raise NotImplementedError


class FunctionRule(BaseRule):
    """Adapts a plain callable ``fn(action, parameters)`` into a rule."""

    def __init__(
        self,
        name: str,
        fn: Callable,
        category: str = ALL_CATEGORIES,
        priority: int = 100,
        depends_on: Optional[List[str]] = None,
        description: Optional[str] = None,
        default_parameters: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.fn = fn
        self.category = category
        self.priority = priority
        self.depends_on = list(depends_on or [])
        self.description = description
        self.default_parameters = dict(default_parameters or {})
        if inspect.iscoroutinefunction(fn):
            self.evaluate = self._evaluate_async
        else:
            self.evaluate = fn

    async def _evaluate_async(self, action: Action, parameters: Dict[str, Any]):
        return await self.fn(action, parameters)


class RuleRegistry:
    """Name-keyed rule set. Registration order breaks priority ties."""

    def __init__(self):
        self._rules: Dict[str, Any] = {}

    def register(self, rule: Any) -> Any:
        for attr in ("name", "category", "priority", "evaluate"):
            if not hasattr(rule, attr):
                raise TypeError(f"Rule {rule!r} is missing required attribute '{attr}'")
        if not rule.name:
            raise ValueError("Rule name must be non-empty")
        if rule.name in self._rules:
            raise ValueError(f"Rule already registered: {rule.name}")
        self._rules[rule.name] = rule
        logger.debug("Registered rule %s (category=%s, priority=%s)", rule.name, rule.category, rule.priority)
        return rule

    def register_function(self, name: str, fn: Callable, **kwargs) -> FunctionRule:
        """Register a plain callable as a rule."""
        return self.register(FunctionRule(name, fn, **kwargs))

    def unregister(self, name: str) -> None:
        self._rules.pop(name, None)

    def get(self, name: str) -> Optional[Any]:
        return self._rules.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def all(self) -> List[Any]:
        """Every rule ordered by priority."""
        return sorted(self._rules.values(), key=lambda r: r.priority)

    def names(self) -> List[str]:
        return [r.name for r in self.all()]

    def rules_for(self, category: str) -> List[Any]:
        """Rules that apply to a category: exact match or the ``*`` wildcard."""
        return [
            r for r in self.all()
            if r.category == category or r.category == ALL_CATEGORIES
        ]

    def entry(self, rule: Any) -> RuleEntry:
        return RuleEntry(
            name=rule.name,
            category=rule.category,
            priority=rule.priority,
            depends_on=list(getattr(rule, "depends_on", []) or []),
            description=getattr(rule, "description", None),
        )

    def entries(self) -> List[RuleEntry]:
        return [self.entry(r) for r in self.all()]

    def discover(self, group: str = ENTRY_POINT_GROUP) -> List[str]:
        """
        Load rules published under an entry-point group.
        An entry point may name a rule class (instantiated with no arguments)
        or a ready-made rule instance. Broken plug-ins are logged and skipped.
        """
        loaded = []
        for ep in entry_points(group=group):
            try:
                target = ep.load()
                rule = target() if inspect.isclass(target) else target
                self.register(rule)
            except Exception:
                logger.exception("Failed to load rule plug-in %s", ep.name)
                continue
            loaded.append(rule.name)
        if loaded:
            logger.info("Discovered %d rules from %s: %s", len(loaded), group, ", ".join(loaded))
        return loaded
