from conductor.roles import (
    BuildRole,
    DeployRole,
    PlanRole,
    ReviewRole,
    RoleSpec,
    build_roles,
    next_role,
    previous_role,
)


def test_roles_load_packaged_prompts() -> None:
    roles = build_roles({"PLAN": "planner-model"})

    assert isinstance(roles["PLAN"], PlanRole)
    assert isinstance(roles["BUILD"], BuildRole)
    assert isinstance(roles["REVIEW"], ReviewRole)
    assert isinstance(roles["DEPLOY"], DeployRole)
    assert roles["PLAN"].model == "planner-model"
    assert roles["BUILD"].model is None
    assert "PLAN phase" in roles["PLAN"].system_prompt
    assert "{{planContext}}" in roles["BUILD"].system_prompt


def test_render_prompt_substitutes_placeholders() -> None:
    rendered = BuildRole().render_prompt({"planContext": "- [ ] Build API", "errorContext": ""})

    assert "- [ ] Build API" in rendered
    assert "{{planContext}}" not in rendered
    assert "{{errorContext}}" not in rendered


def test_missing_prompt_file_uses_fallback() -> None:
    class ScratchRole(RoleSpec):
        role = "REVIEW"
        prompt_file = "missing.md"
        fallback_prompt = "  You review things.  "

    assert ScratchRole().system_prompt == "You review things."


def test_role_order_navigation() -> None:
    assert next_role("PLAN") == "BUILD"
    assert next_role("DEPLOY") is None
    assert previous_role("BUILD") == "PLAN"
    assert previous_role("PLAN") is None
