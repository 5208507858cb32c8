from __future__ import annotations

from importlib import resources

from conductor.memory import Role


class RoleSpec:
    role: Role = "PLAN"
    label: str = "Agent"
    tagline: str = ""
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."

    def __init__(self, *, model: str | None = None) -> None:
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("conductor.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def render_prompt(self, context: dict[str, str]) -> str:
        prompt = self.system_prompt
        for key, value in context.items():
            prompt = prompt.replace("{{" + key + "}}", value)
        return prompt
