from __future__ import annotations

from conductor.roles.base import RoleSpec


class ReviewRole(RoleSpec):
    role = "REVIEW"
    label = "Critic"
    tagline = "Analyze & Verify"
    prompt_file = "review.md"
    fallback_prompt = """
You are the Auditor in the REVIEW phase.
Audit the build output for security, quality and correctness.
""".strip()
