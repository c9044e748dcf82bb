"""Planner contract and the model-backed planner."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from importlib import resources
from typing import Any

import structlog

from foreman.backends.base import AgentBackend
from foreman.capabilities.registry import CapabilityRegistry
from foreman.errors import PlanParseError
from foreman.plan import Plan, TaskDraft, TaskStatus
from foreman.processes import CancelToken

FINAL_CAPABILITY = "submit_response"
HISTORY_ENTRY_LIMIT = 3000

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]+?)\s*```")


class Planner(ABC):
    """Turns objectives, and failures, into task drafts."""

    # Strategy notes from the most recent reply, copied into the plan scratchpad.
    last_scratchpad: str = ""

    @abstractmethod
    async def plan(
        self, objective: str, history: list[dict[str, Any]], token: CancelToken
    ) -> list[TaskDraft]:
        """Draft the initial task list for ``objective``."""

    @abstractmethod
    async def replan(
        self, plan: Plan, failure_context: str, token: CancelToken
    ) -> list[TaskDraft]:
        """Draft replacement tasks for the failed task and everything after it."""


class PlanParser:
    def __init__(self, registry: CapabilityRegistry, *, append_final: bool = True) -> None:
        self.registry = registry
        self.append_final = append_final

    @staticmethod
    def extract_json(text: str) -> str | None:
        cleaned = _THINK_RE.sub("", text).strip()
        first = cleaned.find("{")
        last = cleaned.rfind("}")
        if first != -1 and last > first:
            candidate = cleaned[first : last + 1]
            if '"tasks"' in candidate or '"steps"' in candidate:
                return candidate
        match = _FENCE_RE.search(cleaned)
        if match:
            return match.group(1).strip()
        return None

    def parse(self, text: str) -> tuple[list[TaskDraft], str]:
        """Return the drafts and the scratchpad notes found in ``text``."""
        raw = self.extract_json(text)
        if raw is None:
            raise PlanParseError("Reply does not contain a JSON plan.")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PlanParseError(f"Plan JSON is malformed: {exc.msg}.") from exc

        scratchpad = ""
        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict):
            items = payload.get("tasks") or payload.get("steps") or payload.get("plan")
            scratchpad = str(payload.get("scratchpad", "")).strip()
        else:
            items = None
        if not isinstance(items, list):
            raise PlanParseError("Plan is missing its task list.")

        known = set(self.registry.names())
        drafts: list[TaskDraft] = []
        for index, item in enumerate(items, 1):
            if not isinstance(item, dict):
                raise PlanParseError(f"Task {index} is not an object.")
            draft = TaskDraft.from_dict(item)
            if not draft.capability:
                raise PlanParseError(f"Task {index} does not name a capability.")
            if draft.capability not in known:
                raise PlanParseError(
                    f"Task {index} uses unknown capability '{draft.capability}'."
                )
            drafts.append(draft)

        if (
            self.append_final
            and drafts
            and drafts[-1].capability != FINAL_CAPABILITY
            and FINAL_CAPABILITY in known
        ):
            drafts.append(
                TaskDraft(
                    capability=FINAL_CAPABILITY,
                    description="Report completion to the operator.",
                    params={"response": "All tasks completed successfully."},
                )
            )
        return drafts, scratchpad


def format_history(history: list[dict[str, Any]]) -> str:
    lines: list[str] = []
    for message in history:
        role = str(message.get("role", "user"))
        if role == "system":
            continue
        content = str(message.get("content", ""))
        if len(content) > HISTORY_ENTRY_LIMIT:
            content = content[:HISTORY_ENTRY_LIMIT] + "..."
        lines.append(f"**{role.upper()}**: {content}")
    if not lines:
        return ""
    return "## Previous conversation\n\n" + "\n\n".join(lines) + "\n\n---\n\n"


class BackendPlanner(Planner):
    plan_prompt_file = "planner.md"
    replan_prompt_file = "replan.md"
    fallback_prompt = """
You are a planner. Reply with a JSON object {"tasks": [...]} where each task has
"capability", "description" and "params". Use only these capabilities:

{capabilities}
""".strip()

    def __init__(
        self,
        backend: AgentBackend,
        registry: CapabilityRegistry,
        *,
        max_parse_attempts: int = 3,
        model: str | None = None,
        require_final_response: bool = True,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.parser = PlanParser(registry, append_final=require_final_response)
        self.max_parse_attempts = max(1, max_parse_attempts)
        self.model = model
        self.logger = structlog.get_logger().bind(component="planner")

    def _load_prompt(self, prompt_file: str) -> str:
        try:
            prompt_path = resources.files("foreman.prompts").joinpath(prompt_file)
            template = prompt_path.read_text(encoding="utf-8")
        except (FileNotFoundError, ModuleNotFoundError):
            template = self.fallback_prompt
        return template.strip().replace("{capabilities}", self.registry.describe())

    async def _request(
        self, system_prompt: str, user_prompt: str, token: CancelToken
    ) -> list[TaskDraft]:
        context: dict[str, Any] = {"model": self.model} if self.model else {}
        prompt = user_prompt
        last_error: PlanParseError | None = None
        for attempt in range(self.max_parse_attempts):
            token.raise_if_cancelled()
            raw = await token.run(self.backend.complete(system_prompt, prompt, context, token))
            try:
                drafts, scratchpad = self.parser.parse(raw)
            except PlanParseError as exc:
                last_error = exc
                self.logger.warning("plan_parse_failed", attempt=attempt + 1, error=str(exc))
                prompt = (
                    f"{user_prompt}\n\nYour previous reply could not be used: {exc}\n"
                    f"Previous reply:\n{raw}\n\nReply with only the JSON plan."
                )
                continue
            self.last_scratchpad = scratchpad
            self.logger.info("plan_parsed", attempt=attempt + 1, tasks=len(drafts))
            return drafts
        raise PlanParseError(
            f"Planner reply unusable after {self.max_parse_attempts} attempts: {last_error}"
        )

    async def plan(
        self, objective: str, history: list[dict[str, Any]], token: CancelToken
    ) -> list[TaskDraft]:
        user_prompt = (
            f'{format_history(history)}**Objective:**\n"{objective}"\n\n'
            "Generate the JSON plan."
        )
        return await self._request(self._load_prompt(self.plan_prompt_file), user_prompt, token)

    async def replan(
        self, plan: Plan, failure_context: str, token: CancelToken
    ) -> list[TaskDraft]:
        completed = [
            f"- [{task.id}] {task.capability}: {task.description}"
            for task in plan.tasks
            if task.status is TaskStatus.COMPLETED
        ]
        completed_block = "\n".join(completed) or "- none"
        user_prompt = (
            f'The objective is: "{plan.objective}".\n\n'
            f"Completed tasks:\n{completed_block}\n\n"
            f"{failure_context}\n\n"
            "Generate the replacement tasks as a JSON plan."
        )
        return await self._request(self._load_prompt(self.replan_prompt_file), user_prompt, token)
