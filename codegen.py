"""
codegen.py — Voice Builder · Groq Code Generation Backend
==========================================================
Turns an approved spec into a small runnable web project.

  spec ──▶ Groq chat completion (JSON mode) ──▶ {"files": [{path, content}]}
       ──▶ <output_dir>/<session_id>/repo/...   (one log line per file)
       ──▶ file-tree snapshot ──▶ preview URL

The model is asked for plain JSON, but prose or a code fence around the object
is tolerated.  Every path is checked to stay inside the repo directory.

Cancellation is cooperative: the in-flight completion is abandoned when the
cancel handle fires, and the writer stops between files.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from groq import APIError, AsyncGroq
from pydantic import BaseModel, Field, ValidationError

from config import CodegenConfig
from extraction import Specification
from sessions import (
    CancelHandle,
    GenerationCallbacks,
    GenerationCancelled,
    GenerationResult,
    session_dir,
)

log = logging.getLogger("voice_builder.codegen")

CODEGEN_SYSTEM_PROMPT = """\
You are a senior web engineer. Build a complete, working static web app from
the project spec you are given.

Rules:
- Plain HTML, CSS and vanilla JavaScript only. No build step, no package manager.
- index.html must be at the root and must open directly in a browser.
- Include every page and feature listed in the spec, with realistic sample data.
- Follow the requested ui_style closely.
- Respond with ONE JSON object and nothing else:
  {"files": [{"path": "index.html", "content": "..."}, ...]}
- Paths are relative, use forward slashes, and never contain "..".
"""

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


class CodegenError(Exception):
    """Malformed model output, an unsafe path, or missing credentials."""


class GeneratedFile(BaseModel):
    path: str = Field(min_length=1)
    content: str = ""


class GeneratedProject(BaseModel):
    files: list[GeneratedFile] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_generated_files(raw: str) -> GeneratedProject:
    """Parse the model reply into a ``GeneratedProject``.

    Tries the whole reply, then a fenced block, then the outermost ``{...}``.
    """
    candidates = [raw.strip()]
    fenced = _FENCE_RE.search(raw)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braced = _JSON_OBJECT_RE.search(raw)
    if braced:
        candidates.append(braced.group(0))

    last_error: Optional[Exception] = None
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return GeneratedProject.model_validate(json.loads(candidate))
        except (json.JSONDecodeError, ValidationError) as exc:
            last_error = exc
    raise CodegenError(f"model output is not a valid file list: {last_error}")


def safe_relative_path(path: str) -> PurePosixPath:
    """Normalise a model-supplied path; reject anything escaping the repo root."""
    cleaned = path.strip().replace("\\", "/").lstrip("/")
    rel = PurePosixPath(cleaned)
    if not cleaned or rel.is_absolute() or any(part in ("..", "") for part in rel.parts):
        raise CodegenError(f"unsafe file path from model: {path!r}")
    return rel


# ---------------------------------------------------------------------------
# File tree snapshot
# ---------------------------------------------------------------------------

def build_file_tree(root: str | Path) -> dict[str, Any]:
    """Hierarchical ``{name, path, children}`` snapshot; paths are repo-relative."""
    root = Path(root)

    def walk(directory: Path) -> list[dict[str, Any]]:
        nodes = []
        for entry in sorted(directory.iterdir(), key=lambda p: (p.is_file(), p.name)):
            node: dict[str, Any] = {
                "name": entry.name,
                "path": entry.relative_to(root).as_posix(),
            }
            if entry.is_dir():
                node["children"] = walk(entry)
            nodes.append(node)
        return nodes

    return {"name": root.name, "path": "", "children": walk(root) if root.is_dir() else []}


def render_spec_prompt(specification: Specification) -> str:
    lines = ["Build this project:", "", specification.text.strip(), ""]
    lines.append("Return the JSON file list now.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

class GroqCodegenBackend:
    """``GenerationBackend`` that asks a Groq chat model for the project files."""

    def __init__(self, config: Optional[CodegenConfig] = None, client: Optional[AsyncGroq] = None) -> None:
        self._config = config or CodegenConfig()
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            api_key = os.environ.get("GROQ_API_KEY")
            if not api_key:
                raise CodegenError("GROQ_API_KEY is not set")
            self._client = AsyncGroq(api_key=api_key)
        return self._client

    async def _complete(self, specification: Specification) -> str:
        kwargs: dict[str, Any] = dict(
            model=self._config.model,
            messages=[
                {"role": "system", "content": CODEGEN_SYSTEM_PROMPT},
                {"role": "user", "content": render_spec_prompt(specification)},
            ],
            max_tokens=self._config.max_tokens,
            response_format={"type": "json_object"},
        )
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        response = await self._get_client().chat.completions.create(**kwargs)
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise CodegenError("model returned an empty response")
        return content

    async def _complete_or_cancel(self, specification: Specification, cancel: CancelHandle) -> str:
        llm_task = asyncio.create_task(self._complete(specification), name="codegen_completion")
        cancel_task = asyncio.create_task(cancel.wait(), name="codegen_cancel_wait")
        try:
            await asyncio.wait({llm_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not llm_task.done():
                llm_task.cancel()
        if cancel.cancelled:
            raise GenerationCancelled()
        return llm_task.result()

    async def generate(
        self,
        specification: Specification,
        session_id: str,
        callbacks: GenerationCallbacks,
        cancel: CancelHandle,
    ) -> GenerationResult:
        """Generate the project; failures go to ``callbacks.on_error`` before propagating."""
        try:
            return await self._generate(specification, session_id, callbacks, cancel)
        except (CodegenError, APIError, OSError) as exc:
            log.error("event=codegen_failed session_id=%s error=%s", session_id, exc)
            await callbacks.on_error(str(exc))
            raise

    async def _generate(
        self,
        specification: Specification,
        session_id: str,
        callbacks: GenerationCallbacks,
        cancel: CancelHandle,
    ) -> GenerationResult:
        repo = session_dir(self._config.output_dir, session_id) / "repo"
        log.info("event=codegen_start session_id=%s model=%s", session_id, self._config.model)
        await callbacks.on_log(f"Generating project with {self._config.model}...")

        raw = await self._complete_or_cancel(specification, cancel)
        project = parse_generated_files(raw)
        await callbacks.on_log(f"Model returned {len(project.files)} files")

        for generated in project.files:
            if cancel.cancelled:
                raise GenerationCancelled()
            rel = safe_relative_path(generated.path)
            target = repo / rel
            await asyncio.to_thread(_write_file, target, generated.content)
            log.debug("event=codegen_file_written session_id=%s path=%s bytes=%d", session_id, rel, len(generated.content))
            await callbacks.on_log(f"wrote {rel.as_posix()}")

        tree = await asyncio.to_thread(build_file_tree, repo)
        await callbacks.on_file_tree(tree)

        preview = f"{self._config.preview_base_url.rstrip('/')}/{session_id}/repo/"
        await callbacks.on_preview_ready(preview)
        log.info("event=codegen_done session_id=%s files=%d preview=%s", session_id, len(project.files), preview)
        return GenerationResult(artifact_path=str(repo), preview_endpoint=preview)


def _write_file(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
