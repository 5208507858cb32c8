from __future__ import annotations

from conductor.roles.base import RoleSpec


class PlanRole(RoleSpec):
    role = "PLAN"
    label = "Architect"
    tagline = "Design & Strategy"
    prompt_file = "plan.md"
    fallback_prompt = """
You are the Architect in the PLAN phase.
Output an execution plan as a markdown task list using [ ] markers.
Do not write code.
""".strip()
