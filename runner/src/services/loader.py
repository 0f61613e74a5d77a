"""
Pipeline definition loader and validator.
"""

import os
import re
import yaml
from typing import List, Dict, Any, Optional, Iterable

from runner.src.errors import DefinitionError
from runner.src.models.pipeline import (
    HOOK_ACTIONS,
    POST_CONDITIONS,
    STEP_ACTIONS,
    CredentialRef,
    HookSpec,
    PipelineDefinition,
    StageSpec,
    StepSpec,
    WhenGuard,
)

TOOL_REF = re.compile(r"\$\{tools\.([A-Za-z0-9_.-]+)\}")

PIPELINE_KEYS = {"name", "environment", "tools", "stages", "post"}
STAGE_KEYS = {"name", "steps", "needs", "tools", "environment", "when", "best_effort"}
STEP_KEYS = {"name", "timeout", "env", "credentials"} | set(STEP_ACTIONS)
WHEN_KEYS = {"branch", "environment"}
CHECKOUT_KEYS = {"url", "branch", "commit"}
ARCHIVE_KEYS = {"paths", "allow_empty"}
PUBLISH_KEYS = {"paths", "target", "allow_empty"}
EMAIL_KEYS = {"to", "subject", "body", "attach", "mime_type"}
WEBHOOK_KEYS = {"url", "headers"}

def parse_definition(yaml_content: str) -> PipelineDefinition:
    """Parse a pipeline definition from a YAML string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None) or getattr(e, "context_mark", None)
        location = f"line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        raise DefinitionError(location, f"Invalid YAML: {e}")

    return validate_definition(config)

def parse_definition_dict(config: Dict[str, Any]) -> PipelineDefinition:
    """Validate a pipeline definition from a dict."""
    return validate_definition(config)

def load_definition(path: str) -> PipelineDefinition:
    """Read and validate a definition file."""
    with open(path, "r") as f:
        return parse_definition(f.read())

def validate_definition(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate pipeline definition structure."""
    if not config:
        raise DefinitionError("", "Empty pipeline definition")

    if not isinstance(config, dict):
        raise DefinitionError("", "Pipeline definition must be a mapping")

    _check_keys(config, PIPELINE_KEYS, "")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise DefinitionError("name", "must be a string")

    tools = _string_map(config.get("tools", {}), "tools")
    environment = _string_map(config.get("environment", {}), "environment")
    _check_tool_refs(environment.values(), tools.values(), "environment")

    if "stages" not in config:
        raise DefinitionError("", "Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise DefinitionError("stages", "must be a list")

    if len(stages) == 0:
        raise DefinitionError("stages", "Pipeline must have at least one stage")

    validated_stages = []
    seen = set()
    for i, stage in enumerate(stages):
        validated = validate_stage(stage, i, tools)
        if validated.name in seen:
            raise DefinitionError(f"stages[{i}].name", f"duplicate stage name '{validated.name}'")
        seen.add(validated.name)
        validated_stages.append(validated)

    for i, stage in enumerate(validated_stages):
        for need in stage.needs:
            if need not in seen:
                raise DefinitionError(f"stages[{i}].needs", f"unknown stage '{need}'")
            if need == stage.name:
                raise DefinitionError(f"stages[{i}].needs", "stage cannot depend on itself")

    definition = PipelineDefinition(
        name=name,
        environment=environment,
        tools=tools,
        stages=tuple(validated_stages),
        post=validate_post(config.get("post", {})),
    )

    # Fails on cycles
    execution_order(definition)
    return definition

def validate_stage(stage: Any, index: int, pipeline_tools: Dict[str, str]) -> StageSpec:
    """Validate a single pipeline stage."""
    location = f"stages[{index}]"
    if not isinstance(stage, dict):
        raise DefinitionError(location, "must be a mapping")

    _check_keys(stage, STAGE_KEYS, location)

    if "name" not in stage:
        raise DefinitionError(location, "missing 'name'")
    if not isinstance(stage["name"], str) or not stage["name"].strip():
        raise DefinitionError(f"{location}.name", "must be a non-empty string")

    if "steps" not in stage:
        raise DefinitionError(location, "missing 'steps'")
    if not isinstance(stage["steps"], list) or not stage["steps"]:
        raise DefinitionError(f"{location}.steps", "must be a non-empty list")

    tools = _string_map(stage.get("tools", {}), f"{location}.tools")
    declared = list(pipeline_tools.values()) + list(tools.values())

    environment = _string_map(stage.get("environment", {}), f"{location}.environment")
    _check_tool_refs(environment.values(), declared, f"{location}.environment")

    needs = stage.get("needs", [])
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list) or not all(isinstance(n, str) for n in needs):
        raise DefinitionError(f"{location}.needs", "must be a list of stage names")

    best_effort = stage.get("best_effort", False)
    if not isinstance(best_effort, bool):
        raise DefinitionError(f"{location}.best_effort", "must be a boolean")

    steps = [
        validate_step(step, f"{location}.steps[{j}]", declared)
        for j, step in enumerate(stage["steps"])
    ]

    return StageSpec(
        name=stage["name"],
        steps=tuple(steps),
        needs=tuple(needs),
        tools=tools,
        environment=environment,
        when=_validate_when(stage.get("when"), f"{location}.when"),
        best_effort=best_effort,
    )

def validate_step(step: Any, location: str, declared_tools: Iterable[str] = ()) -> StepSpec:
    """Validate a single step. A bare string is shorthand for an sh step."""
    if isinstance(step, str):
        step = {"sh": step}

    if not isinstance(step, dict):
        raise DefinitionError(location, "must be a string or a mapping")

    _check_keys(step, STEP_KEYS, location)

    actions = [key for key in STEP_ACTIONS if key in step]
    if len(actions) != 1:
        raise DefinitionError(
            location, f"must define exactly one action of {', '.join(STEP_ACTIONS)}"
        )
    action = actions[0]
    args = _step_args(action, step[action], f"{location}.{action}")
    if action == "sh":
        _check_tool_refs([args["command"]], declared_tools, f"{location}.sh")

    timeout = step.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0
    ):
        raise DefinitionError(f"{location}.timeout", "must be a positive integer")

    name = step.get("name") or _default_step_name(action, args)
    if not isinstance(name, str):
        raise DefinitionError(f"{location}.name", "must be a string")

    return StepSpec(
        name=name,
        action=action,
        args=args,
        timeout=timeout,
        env=_string_map(step.get("env", {}), f"{location}.env"),
        credentials=tuple(_validate_credentials(step.get("credentials", []), location)),
    )

def validate_post(post: Any) -> Dict[str, tuple]:
    """Validate post-build hooks keyed by run outcome."""
    if not post:
        return {}
    if not isinstance(post, dict):
        raise DefinitionError("post", "must be a mapping of condition to hooks")

    hooks = {}
    for condition, entries in post.items():
        location = f"post.{condition}"
        if condition not in POST_CONDITIONS:
            raise DefinitionError(location, f"unknown condition, expected one of {', '.join(POST_CONDITIONS)}")
        if not isinstance(entries, list):
            raise DefinitionError(location, "must be a list")
        hooks[condition] = tuple(
            _validate_hook(entry, f"{location}[{i}]") for i, entry in enumerate(entries)
        )
    return hooks

def execution_order(definition: PipelineDefinition) -> List[StageSpec]:
    """
    Order stages so that every stage runs after its needs.
    Ties are broken by file order, so the result is deterministic.
    """
    index = {stage.name: i for i, stage in enumerate(definition.stages)}
    remaining = {stage.name: set(stage.needs) for stage in definition.stages}
    ordered = []

    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            cycle = ", ".join(sorted(remaining, key=index.get))
            raise DefinitionError("stages", f"cyclic stage dependency between: {cycle}")
        name = min(ready, key=index.get)
        ordered.append(definition.stages[index[name]])
        del remaining[name]
        for deps in remaining.values():
            deps.discard(name)

    return ordered

def _step_args(action: str, value: Any, location: str) -> Dict[str, Any]:
    if action == "sh":
        if not isinstance(value, str) or not value.strip():
            raise DefinitionError(location, "must be a non-empty command string")
        return {"command": value}

    if action == "checkout":
        value = value or {}
        if not isinstance(value, dict):
            raise DefinitionError(location, "must be a mapping")
        _check_keys(value, CHECKOUT_KEYS, location)
        for key, arg in value.items():
            if not isinstance(arg, str):
                raise DefinitionError(f"{location}.{key}", "must be a string")
        return {
            "url": value.get("url"),
            "branch": value.get("branch"),
            "commit": value.get("commit"),
        }

    if action in ("archive", "publish"):
        if isinstance(value, (str, list)):
            value = {"paths": value}
        if not isinstance(value, dict):
            raise DefinitionError(location, "must be a path, a list of paths or a mapping")
        _check_keys(value, ARCHIVE_KEYS if action == "archive" else PUBLISH_KEYS, location)
        paths = value.get("paths")
        if isinstance(paths, str):
            paths = [paths]
        if not paths or not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise DefinitionError(f"{location}.paths", "must be a non-empty list of paths")
        for index, path in enumerate(paths):
            if os.path.isabs(path) or ".." in path.replace("\\", "/").split("/"):
                raise DefinitionError(f"{location}.paths[{index}]", "must stay inside the workspace")
        args = {"paths": paths, "allow_empty": bool(value.get("allow_empty", False))}
        if action == "publish":
            target = value.get("target", "")
            if not isinstance(target, str) or os.path.isabs(target) or ".." in target.split("/"):
                raise DefinitionError(f"{location}.target", "must be a relative directory name")
            args["target"] = target
        return args

    # clean_ws
    if value not in (None, {}):
        raise DefinitionError(location, "takes no arguments")
    return {}

def _validate_hook(hook: Any, location: str) -> HookSpec:
    if not isinstance(hook, dict) or len(hook) != 1:
        raise DefinitionError(location, f"must be a mapping with one of {', '.join(HOOK_ACTIONS)}")

    action, value = next(iter(hook.items()))
    if action not in HOOK_ACTIONS:
        raise DefinitionError(location, f"unknown hook '{action}'")
    location = f"{location}.{action}"

    if action == "sh":
        if not isinstance(value, str) or not value.strip():
            raise DefinitionError(location, "must be a non-empty command string")
        return HookSpec(action=action, args={"command": value})

    if not isinstance(value, dict):
        raise DefinitionError(location, "must be a mapping")

    if action == "email":
        _check_keys(value, EMAIL_KEYS, location)
        to = value.get("to")
        if isinstance(to, str):
            to = [to]
        if not to or not isinstance(to, list) or not all(isinstance(t, str) for t in to):
            raise DefinitionError(f"{location}.to", "must be a recipient or list of recipients")
        attach = value.get("attach", [])
        if isinstance(attach, str):
            attach = [attach]
        if not isinstance(attach, list) or not all(isinstance(a, str) for a in attach):
            raise DefinitionError(f"{location}.attach", "must be a list of artifact names")
        return HookSpec(action=action, args={
            "to": to,
            "subject": str(value.get("subject", "{pipeline} #{build_number}: {status}")),
            "body": str(value.get("body", "")),
            "attach": attach,
            "mime_type": str(value.get("mime_type", "text/plain")),
        })

    _check_keys(value, WEBHOOK_KEYS, location)
    if not isinstance(value.get("url"), str):
        raise DefinitionError(f"{location}.url", "missing or not a string")
    return HookSpec(action=action, args={
        "url": value["url"],
        "headers": _string_map(value.get("headers", {}), f"{location}.headers"),
    })

def _validate_when(when: Any, location: str) -> Optional[WhenGuard]:
    if when is None:
        return None
    if not isinstance(when, dict):
        raise DefinitionError(location, "must be a mapping")
    _check_keys(when, WHEN_KEYS, location)
    branch = when.get("branch")
    if branch is not None and not isinstance(branch, str):
        raise DefinitionError(f"{location}.branch", "must be a string")
    return WhenGuard(
        branch=branch,
        environment=_string_map(when.get("environment", {}), f"{location}.environment"),
    )

def _validate_credentials(refs: Any, location: str) -> List[CredentialRef]:
    if not isinstance(refs, list):
        raise DefinitionError(f"{location}.credentials", "must be a list")

    validated = []
    for i, ref in enumerate(refs):
        ref_location = f"{location}.credentials[{i}]"
        if not isinstance(ref, dict):
            raise DefinitionError(ref_location, "must be a mapping with 'id' and 'env'")
        _check_keys(ref, {"id", "env"}, ref_location)
        for key in ("id", "env"):
            if not isinstance(ref.get(key), str) or not ref[key]:
                raise DefinitionError(ref_location, f"missing '{key}'")
        validated.append(CredentialRef(id=ref["id"], env=ref["env"]))
    return validated

def _check_keys(mapping: Dict[str, Any], allowed: set, location: str):
    unknown = sorted(str(k) for k in mapping if k not in allowed)
    if unknown:
        raise DefinitionError(location, f"unknown field(s): {', '.join(unknown)}")

def _check_tool_refs(texts: Iterable[str], declared: Iterable[str], location: str):
    declared = set(declared)
    for text in texts:
        for alias in TOOL_REF.findall(text):
            if alias not in declared:
                raise DefinitionError(location, f"missing required tool '{alias}'")

def _string_map(value: Any, location: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(location, "must be a mapping")

    result = {}
    for key, item in value.items():
        if isinstance(item, bool):
            item = "true" if item else "false"
        if not isinstance(item, (str, int, float)):
            raise DefinitionError(f"{location}.{key}", "must be a scalar")
        result[str(key)] = str(item)
    return result

def _default_step_name(action: str, args: Dict[str, Any]) -> str:
    if action == "sh":
        command = args["command"].strip().splitlines()[0]
        return command if len(command) <= 60 else command[:57] + "..."
    return action
