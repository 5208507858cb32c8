from __future__ import annotations

from conductor.roles.base import RoleSpec


class DeployRole(RoleSpec):
    role = "DEPLOY"
    label = "Deployer"
    tagline = "Ship & Monitor"
    prompt_file = "deploy.md"
    fallback_prompt = """
You are the DevOps engineer in the DEPLOY phase.
Provide only shell commands inside a bash code block.
""".strip()
