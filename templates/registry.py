"""
Flow Registry — loads, validates, and finds chatbot flows.

Flows are loaded from YAML config (`flows:`) and indexed by id and tenant.
Validation problems (dangling step references, duplicate step names) are
logged as warnings but the flow is still registered: at run time the
executor completes or exits a flow that points at a missing step.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from templates.models import Flow

logger = structlog.get_logger()


class FlowRegistry:
    """Central registry for all flows, with trigger-keyword lookup per tenant."""

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._tenant_index: dict[str, list[str]] = {}    # tenant_id → [flow_ids]

    # ── Registration ──────────────────────────────────

    def register(self, flow: Flow):
        """Register a single flow (replacing any flow with the same id)."""
        problems = self.validate(flow)
        if problems:
            logger.warning("flow_config_problems", flow_id=flow.id, problems=problems)

        if flow.id not in self._flows:
            self._tenant_index.setdefault(flow.tenant_id, []).append(flow.id)
        self._flows[flow.id] = flow

        logger.info("flow_registered",
                    flow_id=flow.id,
                    name=flow.name,
                    tenant_id=flow.tenant_id,
                    steps=len(flow.steps))

    def register_from_config(self, config: list[dict[str, Any]]):
        """Load flows from YAML config."""
        for raw in config:
            self.register(Flow(**raw))
        logger.info("flows_loaded", count=len(config))

    # ── Lookup ────────────────────────────────────────

    def get(self, flow_id: Optional[str]) -> Optional[Flow]:
        if not flow_id:
            return None
        return self._flows.get(flow_id)

    def list_all(self) -> list[Flow]:
        return list(self._flows.values())

    def list_for_tenant(self, tenant_id: str) -> list[Flow]:
        return [self._flows[fid] for fid in self._tenant_index.get(tenant_id, []) if fid in self._flows]

    def match_trigger(self, tenant_id: str, text: str) -> Optional[Flow]:
        """First enabled flow of the tenant with a trigger keyword contained in the text (case-insensitive)."""
        lowered = text.lower()
        for flow in self.list_for_tenant(tenant_id):
            if not flow.is_enabled:
                continue
            for keyword in flow.trigger_keywords:
                if keyword and keyword.lower() in lowered:
                    logger.info("flow_trigger_matched", flow_id=flow.id, keyword=keyword)
                    return flow
        return None

    # ── Validation ────────────────────────────────────

    @staticmethod
    def validate(flow: Flow) -> list[str]:
        problems = []
        names = [s.name for s in flow.steps]
        known = set(names)

        if not flow.steps:
            problems.append("flow has no steps")

        duplicates = sorted({n for n in names if names.count(n) > 1})
        for name in duplicates:
            problems.append(f"duplicate step name '{name}'")

        for step in flow.steps:
            if step.next_step and step.next_step not in known:
                problems.append(f"step '{step.name}' references unknown next_step '{step.next_step}'")
            for answer, target in step.conditional_next.items():
                if target and target not in known:
                    problems.append(
                        f"step '{step.name}' conditional_next['{answer}'] references unknown step '{target}'"
                    )

        return problems
