"""Test the filesystem-backed capability provider."""

import asyncio
import base64

import pytest

from planrunner.errors import PathSafetyError, StepExecutionError
from planrunner.models import ExecutionContext
from planrunner.providers.local import LocalVaultProvider, parse_bullets, slugify


@pytest.fixture
def vault(tmp_path):
    return LocalVaultProvider(tmp_path)


@pytest.fixture
def ctx():
    return ExecutionContext()


def call(vault, tool, ctx, **args):
    return asyncio.run(vault.invoke(tool, args, ctx))


def test_create_and_read(vault, ctx):
    assert call(vault, "vault.createFile", ctx, path="notes/a.md", content="hello") == {
        "path": "notes/a.md",
        "created": True,
    }
    read = call(vault, "vault.readFile", ctx, path="notes/a.md")
    assert read["content"] == "hello"
    assert read["etag"]


def test_create_existing_is_noop_by_default(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="one")
    assert call(vault, "vault.createFile", ctx, path="a.md", content="two")["created"] is False
    assert (vault.root / "a.md").read_text() == "one"


def test_create_collision_strategies(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="one")
    unique = call(vault, "vault.createFile", ctx, path="a.md", content="two", collisionStrategy="create-unique")
    assert unique["path"] == "a 1.md"
    with pytest.raises(FileExistsError):
        call(vault, "vault.createFile", ctx, path="a.md", content="x", collisionStrategy="error")
    call(vault, "vault.createFile", ctx, path="a.md", content="three", collisionStrategy="overwrite")
    assert (vault.root / "a.md").read_text() == "three"


def test_create_with_frontmatter(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="body", frontmatter={"tags": ["x"]})
    assert (vault.root / "a.md").read_text() == "---\ntags:\n- x\n---\nbody"


def test_read_range_and_base64(vault, ctx):
    (vault.root / "a.md").write_text("0123456789")
    assert call(vault, "vault.readFile", ctx, path="a.md", range={"start": 2, "end": 5})["content"] == "234"
    encoded = call(vault, "vault.readFile", ctx, path="a.md", **{"as": "base64"})
    assert base64.b64decode(encoded["content"]) == b"0123456789"


def test_read_missing_file(vault, ctx):
    with pytest.raises(FileNotFoundError):
        call(vault, "vault.readFile", ctx, path="nope.md")


def test_write_append_and_etag(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="one")
    etag = call(vault, "vault.readFile", ctx, path="a.md")["etag"]
    call(vault, "vault.writeFile", ctx, path="a.md", content="+two", mode="append", expectedEtag=etag)
    assert (vault.root / "a.md").read_text() == "one+two"

    with pytest.raises(StepExecutionError, match="changed since"):
        call(vault, "vault.writeFile", ctx, path="a.md", content="x", expectedEtag=etag)


def test_rename_and_delete_to_trash(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="x")
    assert call(vault, "vault.rename", ctx, fromPath="a.md", toPath="archive/b.md") == {
        "from": "a.md",
        "to": "archive/b.md",
    }
    assert call(vault, "vault.delete", ctx, path="archive/b.md")["deleted"]
    assert (vault.root / ".trash" / "archive" / "b.md").exists()
    assert call(vault, "vault.listFiles", ctx, recursive=True)["files"] == []


def test_delete_missing(vault, ctx):
    with pytest.raises(FileNotFoundError):
        call(vault, "vault.delete", ctx, path="ghost.md")
    assert call(vault, "vault.delete", ctx, path="ghost.md", requireExists=False)["deleted"] is False


def test_list_files(vault, ctx):
    for name in ("a.md", "b.txt", "sub/c.md"):
        call(vault, "vault.createFile", ctx, path=name, content="")
    assert call(vault, "vault.listFiles", ctx)["files"] == ["a.md", "b.txt"]
    listed = call(vault, "vault.listFiles", ctx, recursive=True, extensions=["md"], limit=1)
    assert listed == {"files": ["a.md"], "total": 2}
    assert call(vault, "vault.listFiles", ctx, prefix="sub")["files"] == ["sub/c.md"]


def test_search_text(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="alpha\nBeta line\n")
    call(vault, "vault.createFile", ctx, path="b.md", content="gamma")
    found = call(vault, "vault.searchText", ctx, query="beta")
    assert found == {"results": [{"path": "a.md", "matches": [{"line": 2, "snippet": "Beta line"}]}]}
    assert call(vault, "vault.searchText", ctx, query="^gam", mode="regex")["results"][0]["path"] == "b.md"


def test_open_file_sets_active_file(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="")
    call(vault, "workspace.openFile", ctx, path="a.md")
    assert ctx.active_file == "a.md"
    assert call(vault, "editor.getActiveFilePath", ctx) == {"path": "a.md"}


def test_commands_list_filters(vault):
    ctx = ExecutionContext(available_commands=[{"id": "app:reload", "name": "Reload"}, {"id": "editor:save", "name": "Save"}])
    assert call(vault, "commands.list", ctx, prefix="editor")["commands"] == [{"id": "editor:save", "name": "Save"}]
    assert len(call(vault, "commands.list", ctx, query="re")["commands"]) == 1


def test_editor_only_tools_unavailable(vault, ctx):
    assert not vault.supports("commands.run")
    with pytest.raises(StepExecutionError, match="not available"):
        call(vault, "commands.run", ctx, id="app:reload")


def test_paths_cannot_escape_root(vault, ctx):
    with pytest.raises(PathSafetyError):
        call(vault, "vault.createFile", ctx, path="../escape.md", content="x")


def test_utilities(vault, ctx):
    assert call(vault, "util.slugifyTitle", ctx, title="Hello, World!") == {"slug": "hello-world"}
    assert call(vault, "util.parseMarkdownBullets", ctx, text="- a\n  * b\ntext") == {"items": ["a", "b"]}
    assert parse_bullets("- a\n  - b", allow_nested=False) == ["a"]
    assert slugify("A long title here", max_length=6) == "a-long"


def test_undo_operations(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="one")
    call(vault, "vault.writeFile", ctx, path="a.md", content="two")
    call(vault, "vault.rename", ctx, fromPath="a.md", toPath="b.md")
    call(vault, "vault.delete", ctx, path="b.md")

    for entry in reversed(ctx.undo_journal):
        assert vault.undo(entry)
        if entry.operation == "vault.delete":
            assert (vault.root / "b.md").read_text() == "two"
        elif entry.operation == "vault.rename":
            assert (vault.root / "a.md").read_text() == "two"
        elif entry.operation == "vault.writeFile":
            assert (vault.root / "a.md").read_text() == "one"
    assert not (vault.root / "a.md").exists()


def test_undo_folder_removes_created_parents(vault, ctx):
    (vault.root / "keep").mkdir()
    call(vault, "vault.ensureFolder", ctx, path="keep/a/b/c")

    assert vault.undo(ctx.undo_journal[-1])
    assert not (vault.root / "keep" / "a").exists()
    assert (vault.root / "keep").is_dir()


def test_undo_overwriting_rename_restores_target(vault, ctx):
    call(vault, "vault.createFile", ctx, path="a.md", content="new")
    call(vault, "vault.createFile", ctx, path="b.md", content="old")
    call(vault, "vault.rename", ctx, fromPath="a.md", toPath="b.md", collisionStrategy="overwrite")
    assert (vault.root / "b.md").read_text() == "new"

    assert vault.undo(ctx.undo_journal[-1])
    assert (vault.root / "a.md").read_text() == "new"
    assert (vault.root / "b.md").read_text() == "old"
