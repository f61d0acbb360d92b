"""
Extension hooks.

Callbacks are registered per phase and run in registration order. Each call
receives a HookContext for the current stage and sub-horizon; callbacks get
everything they may touch through it. Variable and constraint groups or
result rows a hook adds to the context are written back to the model.

Phases
------
before_build  before any variable is added (ctx.model is the empty model)
after_build   all variables/constraints/objective terms are in place
before_solve  right before Model.optimize()
after_solve   after an optimal solve, before results are extracted
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PHASES = ("before_build", "after_build", "before_solve", "after_solve")


class HookContext(BaseModel):
    stage: str
    time_range: range
    params: Any
    setup: Any = None
    model: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    constraints: Dict[str, Any] = Field(default_factory=dict)
    records: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    objective: Optional[float] = None

    class Config:
        arbitrary_types_allowed = True

    def record(self, table: str, **row) -> None:
        self.records.setdefault(table, []).append(row)

    def write_back(self, target) -> None:
        """
        Copy the containers back onto the model being built or solved.

        The context holds copies of them, so groups and table rows added by
        a hook only reach `target` through here.
        """
        target.variables.update(self.variables)
        target.constraints.update(self.constraints)
        target.records.update(self.records)


class Hook(BaseModel):
    name: str
    fn: Callable[[HookContext], None]


class ModelHooks(BaseModel):
    before_build: List[Hook] = Field(default_factory=list)
    after_build: List[Hook] = Field(default_factory=list)
    before_solve: List[Hook] = Field(default_factory=list)
    after_solve: List[Hook] = Field(default_factory=list)

    def register(
        self, phase: str, fn: Callable[[HookContext], None], name: Optional[str] = None
    ) -> Hook:
        if phase not in PHASES:
            raise ValueError(f"Unknown hook phase {phase!r}; expected one of {PHASES}")
        hook = Hook(name=name or getattr(fn, "__name__", "hook"), fn=fn)
        getattr(self, phase).append(hook)
        return hook

    def run(self, phase: str, ctx: HookContext) -> None:
        if phase not in PHASES:
            raise ValueError(f"Unknown hook phase {phase!r}; expected one of {PHASES}")
        for hook in getattr(self, phase):
            logger.debug("Running %s hook %r for %s", phase, hook.name, ctx.stage)
            hook.fn(ctx)
