from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


_DONE = (StepStatus.COMPLETED, StepStatus.SKIPPED)


@dataclass(frozen=True)
class Persona:
    name: str
    role: str
    instruction: str


PERSONAS: Dict[str, Persona] = {
    "planner": Persona(
        name="Architect",
        role="planner",
        instruction=(
            "You are the Lead Architect for a software squad. Break the user's request into a concrete, "
            "sequential plan of action. You do not write code. Assign implementation work to 'coder', "
            "tests and verification to 'tester', and fixes to 'debugger'."
        ),
    ),
    "coder": Persona(
        name="Engineer",
        role="coder",
        instruction=(
            "You are the Senior Software Engineer (Coder Agent). Implement the requested features with "
            "clean, efficient code. Check the file structure first if you are unsure where files live."
        ),
    ),
    "tester": Persona(
        name="QA Specialist",
        role="tester",
        instruction=(
            "You are the QA Specialist (Testing Agent). Write tests and validation scripts, run them, "
            "and focus on edge cases."
        ),
    ),
    "debugger": Persona(
        name="Debugger",
        role="debugger",
        instruction=(
            "You are the Rapid Response Debugger (Debugging Agent). Analyse the error, then propose the "
            "specific code change that resolves it. Rewrite code when that is what fixes the bug."
        ),
    ),
}

DEFAULT_ROLE = "coder"


@dataclass
class PlanStep:
    id: str
    title: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    assigned_role: str = DEFAULT_ROLE
    dependencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "assignedAgent": self.assigned_role,
            "dependencies": list(self.dependencies),
        }


class _PlanItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str
    description: str = ""
    assigned_role: str = Field(default=DEFAULT_ROLE, validation_alias=AliasChoices("assignedAgent", "assigned_role", "role"))
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        return [str(v).strip() for v in value if str(v).strip()]

    @field_validator("assigned_role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> str:
        role = str(value or "").strip().lower()
        return role if role in PERSONAS else DEFAULT_ROLE


_FENCE = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


def _load_plan_json(text: str) -> Any:
    candidates = [m.group(1) for m in _FENCE.finditer(text)]
    candidates.append(text)
    for candidate in candidates:
        try:
            return json.loads(candidate.strip())
        except json.JSONDecodeError:
            continue
    # Models sometimes wrap the object in prose.
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            pass
    raise ValueError("no JSON document found")


def parse_plan(text: str) -> List[PlanStep]:
    """Parse a planner response into steps; malformed input yields ``[]``."""
    try:
        data = _load_plan_json(text or "")
    except ValueError:
        logging.warning("Plan response was not valid JSON: %s", (text or "")[:200])
        return []
    if isinstance(data, dict):
        data = data.get("plan", data.get("steps"))
    if not isinstance(data, list):
        logging.warning("Plan response did not contain a list of steps.")
        return []

    items: List[Tuple[int, _PlanItem]] = []
    for index, raw in enumerate(data, 1):
        try:
            items.append((index, _PlanItem.model_validate(raw)))
        except ValidationError:
            logging.warning("Skipping malformed plan step #%s", index, exc_info=True)

    # Generated ids must not collide with any id the model gave explicitly.
    explicit = {item.id for _, item in items if item.id}
    steps: List[PlanStep] = []
    seen = set()
    for index, item in items:
        step_id = item.id
        if not step_id or step_id in seen:
            n = index
            while f"step-{n}" in seen or f"step-{n}" in explicit:
                n += 1
            step_id = f"step-{n}"
        seen.add(step_id)
        steps.append(
            PlanStep(
                id=step_id,
                title=item.title.strip(),
                description=item.description.strip(),
                assigned_role=item.assigned_role,
                dependencies=item.dependencies,
            )
        )
    return steps


class DeadlockError(Exception):
    """No plan step can become eligible while pending steps remain."""


class PlanScheduler:
    """Dependency-ordered transitions over a fixed list of plan steps."""

    def __init__(self, steps: Iterable[PlanStep]) -> None:
        self.steps: List[PlanStep] = list(steps)
        self._by_id: Dict[str, PlanStep] = {s.id: s for s in self.steps}

    def get(self, step_id: str) -> PlanStep:
        try:
            return self._by_id[step_id]
        except KeyError:
            raise KeyError(f"Unknown plan step: {step_id}") from None

    def index_of(self, step_id: str) -> int:
        return self.steps.index(self.get(step_id))

    def _ready(self, step: PlanStep) -> bool:
        for dep in step.dependencies:
            other = self._by_id.get(dep)
            if other is None or other.status not in _DONE:
                return False
        return True

    def next_eligible(self) -> Optional[PlanStep]:
        for step in self.steps:
            if step.status is StepStatus.PENDING and self._ready(step):
                return step
        return None

    def activate(self, step_id: str) -> PlanStep:
        step = self.get(step_id)
        if step.status is not StepStatus.PENDING:
            raise ValueError(f"Step {step_id} is {step.status.value}, not pending.")
        if not self._ready(step):
            raise ValueError(f"Step {step_id} has unfinished dependencies.")
        current = self.active()
        if current is not None:
            raise ValueError(f"Step {current.id} is still active.")
        step.status = StepStatus.ACTIVE
        return step

    def complete(self, step_id: str) -> PlanStep:
        step = self.get(step_id)
        if step.status is not StepStatus.ACTIVE:
            raise ValueError(f"Step {step_id} is {step.status.value}, not active.")
        step.status = StepStatus.COMPLETED
        return step

    def fail(self, step_id: str) -> PlanStep:
        step = self.get(step_id)
        if step.status not in (StepStatus.ACTIVE, StepStatus.PENDING):
            raise ValueError(f"Step {step_id} is already {step.status.value}.")
        step.status = StepStatus.FAILED
        return step

    def skip(self, step_id: str) -> PlanStep:
        step = self.get(step_id)
        if step.status not in (StepStatus.ACTIVE, StepStatus.PENDING):
            raise ValueError(f"Step {step_id} is already {step.status.value}.")
        step.status = StepStatus.SKIPPED
        return step

    def active(self) -> Optional[PlanStep]:
        return next((s for s in self.steps if s.status is StepStatus.ACTIVE), None)

    def has_pending(self) -> bool:
        return any(s.status is StepStatus.PENDING for s in self.steps)

    def is_finished(self) -> bool:
        return not self.has_pending() and self.active() is None

    def find_missing_dependencies(self) -> Dict[str, List[str]]:
        missing: Dict[str, List[str]] = {}
        for step in self.steps:
            unknown = [d for d in step.dependencies if d not in self._by_id]
            if unknown:
                missing[step.id] = unknown
        return missing

    def find_cycle(self) -> Optional[List[str]]:
        """Return one dependency cycle as ``[a, b, ..., a]``, if any."""
        state: Dict[str, int] = {}
        trail: List[str] = []

        def _visit(step_id: str) -> Optional[List[str]]:
            state[step_id] = 1
            trail.append(step_id)
            for dep in self._by_id[step_id].dependencies:
                if dep not in self._by_id:
                    continue
                if state.get(dep) == 1:
                    return trail[trail.index(dep) :] + [dep]
                if dep not in state:
                    found = _visit(dep)
                    if found:
                        return found
            trail.pop()
            state[step_id] = 2
            return None

        for step in self.steps:
            if step.id not in state:
                found = _visit(step.id)
                if found:
                    return found
        return None

    def deadlock_reason(self) -> Optional[str]:
        """Explain why no step can run, or ``None`` when progress is possible."""
        if not self.has_pending() or self.active() is not None or self.next_eligible() is not None:
            return None
        missing = self.find_missing_dependencies()
        if missing:
            detail = "; ".join(f"'{sid}' needs {', '.join(repr(d) for d in deps)}" for sid, deps in missing.items())
            return f"Deadlock: steps depend on unknown step ids ({detail})"
        cycle = self.find_cycle()
        if cycle:
            return f"Deadlock: dependency cycle {' -> '.join(cycle)}"
        blocked = [
            s.id
            for s in self.steps
            if s.status is StepStatus.PENDING
            and any(self._by_id[d].status is StepStatus.FAILED for d in s.dependencies)
        ]
        if blocked:
            return f"Deadlock: steps {', '.join(blocked)} depend on failed steps"
        return "Deadlock: no pending step is eligible to run"

    def to_list(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.steps]


def build_plan_prompt(goal: str, context: str) -> str:
    return f"""{PERSONAS['planner'].instruction}

Analyze the following request and context, then generate a JSON object with a single key "plan" which is an array of plan steps.

GOAL: {goal}
CONTEXT: {context}

Each step is an object with the following properties:
- id: A unique string identifier for the step (e.g., "step-1").
- title: A short, descriptive title for the step.
- description: A detailed explanation of what needs to be done.
- status: The initial status, which MUST be "pending".
- assignedAgent: One of 'coder', 'tester' or 'debugger'.
- dependencies: IDs of steps that must be completed before this step can start.

Example Output:
{{
  "plan": [
    {{"id": "step-1", "title": "Set up project structure", "description": "Create the initial folders and files.", "status": "pending", "assignedAgent": "coder", "dependencies": []}},
    {{"id": "step-2", "title": "Implement core logic", "description": "Write the main application logic.", "status": "pending", "assignedAgent": "coder", "dependencies": ["step-1"]}}
  ]
}}

Ensure your response is ONLY the JSON object and nothing else."""


def build_system_prompt(steps: Sequence[PlanStep]) -> str:
    roles = "\n".join(f"- {p.role} ({p.name}): {p.instruction}" for p in PERSONAS.values() if p.role != "planner")
    plan = json.dumps([s.to_dict() for s in steps], indent=2)
    return f"""You are "Vibe Agent", an autonomous coding assistant.
You have agreed on a plan with the user. Your task is to execute this plan step by step.

Current Plan:
{plan}

Each step names the team role that carries it out:
{roles}

For each turn I will tell you which step needs to be worked on. Respond with a tool call to perform
the next action (for example fs_readFile or fs_writeFile). I will send back the tool result. File writes
and deletions are staged for human review, and reads already include your staged changes. When the
step is finished, reply with a short explanation and no tool call."""


def build_step_prompt(position: int, step: PlanStep) -> str:
    persona = PERSONAS.get(step.assigned_role, PERSONAS[DEFAULT_ROLE])
    return (
        f"[{persona.name}] {persona.instruction}\n\n"
        f'We are working on Step {position}: "{step.title}" - {step.description}. What is the next action?'
    )


def build_summary_prompt(goal: str, steps: Sequence[PlanStep], changes: Sequence[str]) -> str:
    lines = "\n".join(f"- [{s.status.value}] {s.title}" for s in steps)
    changed = "\n".join(f"- {c}" for c in changes) or "- (no file changes)"
    return (
        "The plan has finished. Write a short report for the user in Markdown, starting with a "
        "'### Summary' heading, covering what was done and anything they should review.\n\n"
        f"GOAL: {goal}\n\nSTEPS:\n{lines}\n\nSTAGED CHANGES:\n{changed}"
    )


def fallback_summary(steps: Sequence[PlanStep], changes: Sequence[str]) -> str:
    done = sum(1 for s in steps if s.status in _DONE)
    text = f"### Summary\nCompleted {done} of {len(steps)} plan steps."
    if changes:
        text += "\n\nChanges awaiting review:\n" + "\n".join(f"- {c}" for c in changes)
    return text
