"""Human-facing HTML rendering of a study and its children."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

from resource_store import ResourceStore
from xhub.key_codec import decode, encode
from xhub.payload import PayloadError, decode_payload

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def build_env(templates_dir: Path = TEMPLATES_DIR) -> ImmutableSandboxedEnvironment:
    return ImmutableSandboxedEnvironment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=True,
        undefined=StrictUndefined,
    )


def _pretty(raw: bytes) -> str:
    try:
        value = decode_payload(raw)
    except PayloadError:
        return bytes(raw).decode("utf-8", errors="replace")
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False)


def _link(item) -> dict[str, Any]:
    return {"id": item.id, "url": item.url, "name": decode(item.id).name}


def study_context(store: ResourceStore, study: str) -> dict[str, Any] | None:
    raw = store.studies.get(study)
    if raw is None:
        return None
    path = store.studies.path(study)
    trials = []
    for item in store.trials.list(study):
        trial = _link(item)
        trial["files"] = [_link(f) for f in store.trial_files.list(study, trial["name"])]
        trials.append(trial)
    return {
        "study": {
            "id": str(path),
            "name": study,
            "url": store.url_for(path),
            "created": store.index.get(encode(path)),
            "data": _pretty(raw),
        },
        "trials": trials,
        "files": [_link(item) for item in store.study_files.list(study)],
    }


def render_study_view(env: ImmutableSandboxedEnvironment, store: ResourceStore, study: str) -> str | None:
    context = study_context(store, study)
    if context is None:
        return None
    return env.get_template("study_view.html").render(**context)
