from __future__ import annotations

from conductor.roles.base import RoleSpec


class BuildRole(RoleSpec):
    role = "BUILD"
    label = "Engineer"
    tagline = "Code & Execute"
    prompt_file = "build.md"
    fallback_prompt = """
You are the Engineer in the BUILD phase.
Execute the plan and echo task status with [>] and [x] markers.
""".strip()
