"""Filesystem-backed provider — runs vault tools against a local directory.

Every path is resolved inside ``root``; anything that escapes it is refused.
Mutations are journalled on the execution context so they can be undone.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Callable

import yaml

from planrunner.errors import StepExecutionError
from planrunner.models import ExecutionContext, UndoEntry
from planrunner.paths import resolve_in_root, validate_vault_path
from planrunner.providers.base import CapabilityProvider
from planrunner.tools.registry import ToolRegistry, create_default_registry

logger = logging.getLogger(__name__)

TRASH_DIR = ".trash"

Handler = Callable[[Any, ExecutionContext], dict[str, Any]]


def etag_for(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def slugify(title: str, max_length: int | None = None) -> str:
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if max_length:
        slug = slug[:max_length].rstrip("-")
    return slug


def parse_bullets(text: str, allow_nested: bool | None = None) -> list[str]:
    items = []
    for line in text.split("\n"):
        if allow_nested is False and line[:1] in (" ", "\t"):
            continue
        trimmed = line.strip()
        if re.match(r"^[-*+]\s+", trimmed):
            items.append(re.sub(r"^[-*+]\s+", "", trimmed))
    return items


class LocalVaultProvider(CapabilityProvider):
    """Vault, workspace and util tools over a plain directory tree.

    Editor mutations, command execution and the Dataview/Templater tools need
    a live editor; they raise StepExecutionError here.
    """

    def __init__(self, root: Path, registry: ToolRegistry | None = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.registry = registry or create_default_registry()
        self._handlers: dict[str, Handler] = {
            "vault.ensureFolder": self.ensure_folder,
            "vault.createFile": self.create_file,
            "vault.readFile": self.read_file,
            "vault.writeFile": self.write_file,
            "vault.rename": self.rename,
            "vault.delete": self.delete,
            "vault.searchText": self.search_text,
            "vault.listFiles": self.list_files,
            "editor.getSelection": self.get_selection,
            "editor.getActiveFilePath": self.get_active_file_path,
            "workspace.openFile": self.open_file,
            "workspace.getContext": self.get_workspace_context,
            "commands.list": self.list_commands,
            "dataview.status": self.plugin_status,
            "templater.status": self.plugin_status,
            "util.parseMarkdownBullets": self.parse_markdown_bullets,
            "util.slugifyTitle": self.slugify_title,
        }

    def supports(self, tool: str) -> bool:
        return tool in self._handlers

    async def invoke(self, tool: str, args: dict[str, Any], context: ExecutionContext) -> Any:
        handler = self._handlers.get(tool)
        if handler is None:
            raise StepExecutionError(f"Tool '{tool}' is not available without a running editor")
        tool_def = self.registry.get_def(tool)
        parsed = tool_def.args_model.model_validate(args) if tool_def else args
        logger.debug(f"Local invoke {tool} {args}")
        # handlers block on disk I/O, keep them off the event loop
        return await asyncio.get_running_loop().run_in_executor(None, handler, parsed, context)

    def _resolve(self, path: str) -> Path:
        return resolve_in_root(self.root, path)

    def _relative(self, full: Path) -> str:
        return full.relative_to(self.root.resolve()).as_posix()

    # ------------------------------------------------------------------
    # Vault
    # ------------------------------------------------------------------

    def ensure_folder(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        if full.is_dir():
            return {"path": self._relative(full), "created": False}
        if full.exists():
            raise FileExistsError(f"Not a folder: {args.path}")
        created = []
        missing = full
        while not missing.exists():
            created.append(self._relative(missing))
            missing = missing.parent
        full.mkdir(parents=True)
        # deepest first, the order undo removes them in
        context.record_undo("vault.ensureFolder", {"path": self._relative(full)}, {"created": created})
        return {"path": self._relative(full), "created": True}

    def create_file(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        content = args.content
        if args.frontmatter:
            content = f"---\n{yaml.safe_dump(args.frontmatter, sort_keys=False)}---\n{content}"

        previous = None
        if full.exists():
            strategy = args.collision_strategy
            if strategy == "error" or (strategy is None and not args.if_not_exists):
                raise FileExistsError(f"File already exists: {args.path}")
            if strategy == "create-unique":
                full = self._unique_path(full)
            elif strategy == "overwrite":
                previous = full.read_text()
            else:
                return {"path": self._relative(full), "created": False}

        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content)
        context.record_undo("vault.createFile", {"path": self._relative(full)}, previous)
        return {"path": self._relative(full), "created": True}

    def read_file(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        if not full.is_file():
            raise FileNotFoundError(f"File not found: {args.path}")

        if args.as_ == "base64":
            data = full.read_bytes()
            if args.max_bytes:
                data = data[: args.max_bytes]
            return {"path": self._relative(full), "content": base64.b64encode(data).decode("ascii"), "encoding": "base64"}

        raw = full.read_text()
        content = raw
        if args.range:
            content = content[args.range.start : args.range.end]
        if args.max_bytes:
            content = content.encode("utf-8")[: args.max_bytes].decode("utf-8", errors="ignore")
        return {"path": self._relative(full), "content": content, "etag": etag_for(raw)}

    def write_file(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        previous = full.read_text() if full.is_file() else None

        if args.expected_etag and (previous is None or etag_for(previous) != args.expected_etag):
            raise StepExecutionError(f"File changed since it was read: {args.path}")

        content = args.content
        if args.mode == "append" and previous is not None:
            content = previous + content

        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content)
        context.record_undo("vault.writeFile", {"path": self._relative(full)}, previous)
        return {"path": self._relative(full), "etag": etag_for(content)}

    def rename(self, args, context: ExecutionContext) -> dict[str, Any]:
        source = self._resolve(args.from_path)
        target = self._resolve(args.to_path)
        if not source.exists():
            raise FileNotFoundError(f"File not found: {args.from_path}")
        replaced = None
        if target.exists():
            if args.collision_strategy == "create-unique":
                target = self._unique_path(target)
            elif args.collision_strategy == "overwrite":
                replaced = {"trashPath": self._move_to_trash(target)}
            else:
                raise FileExistsError(f"File already exists: {args.to_path}")

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        moved = {"fromPath": self._relative(source), "toPath": self._relative(target)}
        context.record_undo("vault.rename", moved, replaced)
        return {"from": moved["fromPath"], "to": moved["toPath"]}

    def delete(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        if not full.exists():
            if args.require_exists:
                raise FileNotFoundError(f"File not found: {args.path}")
            return {"path": args.path, "deleted": False}

        relative = self._relative(full)
        if args.trash:
            context.record_undo("vault.delete", {"path": relative}, {"trashPath": self._move_to_trash(full)})
        else:
            previous = full.read_text() if full.is_file() else None
            if full.is_dir():
                shutil.rmtree(full)
            else:
                full.unlink()
            context.record_undo("vault.delete", {"path": relative}, {"content": previous})
        return {"path": relative, "deleted": True}

    def search_text(self, args, context: ExecutionContext) -> dict[str, Any]:
        flags = 0 if args.case_sensitive else re.IGNORECASE
        expr = args.query if args.mode == "regex" else re.escape(args.query)
        pattern = re.compile(expr, flags)

        results = []
        for full in self._iter_files(args.paths):
            if full.suffix != ".md":
                continue
            matches = []
            for number, line in enumerate(full.read_text().split("\n"), 1):
                if pattern.search(line):
                    matches.append({"line": number, "snippet": line.strip()[: args.snippet_length]})
            if matches:
                results.append({"path": self._relative(full), "matches": matches})
                if len(results) >= args.limit:
                    break
        return {"results": results}

    def list_files(self, args, context: ExecutionContext) -> dict[str, Any]:
        prefix = (args.prefix or "").strip("/")
        folder = self._resolve(prefix) if prefix else self.root.resolve()
        if not folder.is_dir():
            raise FileNotFoundError(f"Folder not found: {prefix}")

        walker = folder.rglob("*") if args.recursive else folder.iterdir()
        files = sorted(
            self._relative(p) for p in walker
            if p.is_file() and not self._in_trash(p)
            and (not args.extensions or p.suffix.lstrip(".") in [e.lstrip(".") for e in args.extensions])
        )
        total = len(files)
        start = args.offset or 0
        end = start + args.limit if args.limit else None
        return {"files": files[start:end], "total": total}

    # ------------------------------------------------------------------
    # Editor / workspace
    # ------------------------------------------------------------------

    def get_selection(self, args, context: ExecutionContext) -> dict[str, Any]:
        return {"text": context.selection or ""}

    def get_active_file_path(self, args, context: ExecutionContext) -> dict[str, Any]:
        return {"path": context.active_file or ""}

    def open_file(self, args, context: ExecutionContext) -> dict[str, Any]:
        full = self._resolve(args.path)
        if not full.is_file():
            raise FileNotFoundError(f"File not found: {args.path}")
        context.active_file = self._relative(full)
        return {"path": context.active_file}

    def get_workspace_context(self, args, context: ExecutionContext) -> dict[str, Any]:
        open_files = [context.active_file] if context.active_file else []
        return {"activeFile": context.active_file, "openFiles": open_files, "selection": context.selection}

    def list_commands(self, args, context: ExecutionContext) -> dict[str, Any]:
        commands = context.available_commands
        if args.prefix:
            commands = [c for c in commands if str(c.get("id", "")).startswith(args.prefix)]
        if args.query:
            q = args.query.lower()
            commands = [c for c in commands if q in str(c.get("name", "")).lower() or q in str(c.get("id", "")).lower()]
        if args.limit:
            commands = commands[: args.limit]
        return {"commands": commands}

    def plugin_status(self, args, context: ExecutionContext) -> dict[str, Any]:
        return {"available": False}

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def parse_markdown_bullets(self, args, context: ExecutionContext) -> dict[str, Any]:
        return {"items": parse_bullets(args.text, args.allow_nested)}

    def slugify_title(self, args, context: ExecutionContext) -> dict[str, Any]:
        return {"slug": slugify(args.title, args.max_length)}

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, entry: UndoEntry) -> bool:
        op, args, previous = entry.operation, entry.args, entry.previous_state
        if op == "vault.createFile" or op == "vault.writeFile":
            full = self._resolve(args["path"])
            if previous is None:
                full.unlink(missing_ok=True)
            else:
                full.write_text(previous)
        elif op == "vault.ensureFolder":
            created = previous["created"] if previous else [args["path"]]
            for path in created:
                full = self._resolve(path)
                if full.is_dir() and not any(full.iterdir()):
                    full.rmdir()
        elif op == "vault.rename":
            target = self._resolve(args["toPath"])
            shutil.move(str(target), str(self._resolve(args["fromPath"])))
            if previous and previous.get("trashPath"):
                shutil.move(str(self._resolve(previous["trashPath"])), str(target))
        elif op == "vault.delete":
            full = self._resolve(args["path"])
            full.parent.mkdir(parents=True, exist_ok=True)
            if previous and previous.get("trashPath"):
                shutil.move(str(self._resolve(previous["trashPath"])), str(full))
            elif previous and previous.get("content") is not None:
                full.write_text(previous["content"])
            else:
                return False
        else:
            return False
        logger.info(f"Undid {op} {args}")
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _iter_files(self, paths: list[str] | None):
        if not paths:
            yield from (p for p in sorted(self.root.resolve().rglob("*")) if p.is_file() and not self._in_trash(p))
            return
        for path in paths:
            full = self._resolve(validate_vault_path(path))
            if full.is_dir():
                yield from (p for p in sorted(full.rglob("*")) if p.is_file())
            elif full.is_file():
                yield full

    def _move_to_trash(self, full: Path) -> str:
        trashed = self._unique_path(self.root.resolve() / TRASH_DIR / self._relative(full))
        trashed.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(full), str(trashed))
        return self._relative(trashed)

    def _in_trash(self, full: Path) -> bool:
        return TRASH_DIR in full.relative_to(self.root.resolve()).parts

    @staticmethod
    def _unique_path(full: Path) -> Path:
        if not full.exists():
            return full
        n = 1
        while True:
            candidate = full.with_name(f"{full.stem} {n}{full.suffix}")
            if not candidate.exists():
                return candidate
            n += 1
