"""Trust configuration loading utilities."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import TrustConfigError
from .models import TrustConfig, TrustLayer

logger = logging.getLogger(__name__)

REPO_CONFIG_PATH = Path(".drover") / "auto-approve.yaml"
OVERRIDES_PATH = Path(".drover") / "overrides"

_SECTION_RE = re.compile(r"^## Auto-Approve\s*$", re.MULTILINE)
_NEXT_HEADING_RE = re.compile(r"^#{1,2}\s+", re.MULTILINE)
_BASH_ITEM_RE = re.compile(r"""^bash(-deny)?:\s*["'](.+?)["']$""")
_TOOL_ITEM_RE = re.compile(r"^(allow|deny):\s*([\w.-]+)$")


def parse_markdown_override(content: str) -> TrustLayer:
    """Parse the ``## Auto-Approve`` section of a task document.

    Recognised list items::

        - bash: "npm publish"
        - bash-deny: "curl .*"
        - allow: NotebookEdit
        - deny: WebFetch
    """

    match = _SECTION_RE.search(content)
    if match is None:
        return TrustLayer()
    body = content[match.end() :]
    following = _NEXT_HEADING_RE.search(body)
    if following is not None:
        body = body[: following.start()]

    layer: dict[str, list[str]] = {
        "allow": [],
        "deny": [],
        "bash_allow_patterns": [],
        "bash_deny_patterns": [],
    }
    for raw in body.splitlines():
        line = raw.strip()
        if not line.startswith("-"):
            continue
        item = line[1:].strip()
        bash = _BASH_ITEM_RE.match(item)
        if bash:
            key = "bash_deny_patterns" if bash.group(1) else "bash_allow_patterns"
            layer[key].append(bash.group(2))
            continue
        tool = _TOOL_ITEM_RE.match(item)
        if tool:
            layer[tool.group(1)].append(tool.group(2))
    return TrustLayer.model_validate(layer)


class TrustConfigLoader:
    """Loads the global, repo and task-override trust layers from disk.

    Missing files contribute empty layers. Any file that exists but cannot be
    parsed or validated is reported; all problems are collected and raised
    together as one :class:`TrustConfigError`.
    """

    def __init__(self, global_path: Path, repo_root: Path | None = None) -> None:
        self._global_path = Path(global_path).expanduser()
        self._repo_root = Path(repo_root) if repo_root is not None else None

    @property
    def global_path(self) -> Path:
        return self._global_path

    def load(self, repo_path: Path | str | None = None, task_id: str | None = None) -> TrustConfig:
        repo = Path(repo_path) if repo_path is not None else self._repo_root
        errors: list[str] = []

        global_document = self._read_yaml(self._global_path, errors) or {}
        global_layer = self._validate_layer(
            global_document.get("defaults", _layer_keys(global_document)),
            self._global_path,
            errors,
        )

        repo_layer = TrustLayer()
        if repo is not None:
            repo_rules = _repo_rules(global_document.get("repos"), repo.resolve(), self._global_path, errors)
            if repo_rules is not None:
                repo_layer = repo_layer.merge(
                    self._validate_layer(repo_rules, self._global_path, errors)
                )
            repo_file = repo / REPO_CONFIG_PATH
            repo_document = self._read_yaml(repo_file, errors)
            if repo_document is not None:
                repo_layer = repo_layer.merge(self._validate_layer(repo_document, repo_file, errors))

        task_layer = TrustLayer()
        if repo is not None and task_id:
            task_layer = self._load_task_override(repo / OVERRIDES_PATH, task_id, errors)

        if errors:
            raise TrustConfigError("; ".join(errors), hint="fix the listed trust config files")

        config = TrustConfig(global_layer=global_layer, repo=repo_layer, task_override=task_layer)
        logger.debug(
            "Loaded trust config",
            extra={
                "repo_path": str(repo) if repo else None,
                "task_id": task_id,
                "layers": [name for name, layer in config.layers() if not layer.is_empty()],
            },
        )
        return config

    def _load_task_override(self, directory: Path, task_id: str, errors: list[str]) -> TrustLayer:
        layer = TrustLayer()
        for suffix in (".yaml", ".yml"):
            path = directory / f"{task_id}{suffix}"
            document = self._read_yaml(path, errors)
            if document is not None:
                layer = layer.merge(self._validate_layer(document, path, errors))
        markdown = directory / f"{task_id}.md"
        if markdown.exists():
            try:
                layer = layer.merge(parse_markdown_override(markdown.read_text(encoding="utf-8")))
            except ValidationError as exc:
                errors.append(f"Trust override validation error in {markdown}: {exc}")
            except (OSError, UnicodeDecodeError) as exc:
                errors.append(f"Failed to read {markdown}: {exc}")
        return layer

    @staticmethod
    def _read_yaml(path: Path, errors: list[str]) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            errors.append(f"Failed to parse YAML in {path}: {exc}")
            return None
        except (OSError, UnicodeDecodeError) as exc:
            errors.append(f"Failed to read {path}: {exc}")
            return None
        if document is None:
            return None
        if not isinstance(document, dict):
            errors.append(f"Trust config {path} must be a mapping")
            return None
        return document

    @staticmethod
    def _validate_layer(document: Any, path: Path, errors: list[str]) -> TrustLayer:
        try:
            return TrustLayer.model_validate(document or {})
        except ValidationError as exc:
            errors.append(f"Trust config validation error in {path}: {exc}")
            return TrustLayer()


def _layer_keys(document: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in document.items() if key != "repos"}


def _repo_rules(repos: Any, repo_path: Path, path: Path, errors: list[str]) -> Any:
    """Return the ``repos:`` entry whose path equals or contains ``repo_path``."""

    if repos is None:
        return None
    if not isinstance(repos, dict):
        errors.append(f"'repos' in {path} must map repository paths to rules")
        return None
    best: tuple[int, Any] | None = None
    for prefix, rules in repos.items():
        base = Path(str(prefix)).expanduser().resolve()
        if repo_path == base or base in repo_path.parents:
            depth = len(base.parts)
            if best is None or depth > best[0]:
                best = (depth, rules)
    return best[1] if best else None


__all__ = ["TrustConfigLoader", "parse_markdown_override"]
