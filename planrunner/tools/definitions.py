"""All built-in tool definitions (ToolDef) and their argument models."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from planrunner.models import ToolDef


class ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NoArgs(ToolArgs):
    pass


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class VaultEnsureFolderArgs(ToolArgs):
    path: str = Field(min_length=1)


class VaultListFilesArgs(ToolArgs):
    prefix: Optional[str] = None
    recursive: Optional[bool] = None
    extensions: Optional[list[str]] = None
    limit: Optional[int] = Field(default=None, gt=0)
    offset: Optional[int] = Field(default=None, ge=0)


class ReadRange(ToolArgs):
    start: int = Field(ge=0)
    end: int = Field(ge=0)


class VaultReadFileArgs(ToolArgs):
    path: str = Field(min_length=1)
    max_bytes: Optional[int] = Field(default=None, gt=0)
    range: Optional[ReadRange] = None
    as_: Literal["text", "base64"] = Field(default="text", alias="as")


class VaultCreateFileArgs(ToolArgs):
    path: str = Field(min_length=1)
    content: str
    if_not_exists: bool = True
    collision_strategy: Optional[Literal["error", "create-unique", "overwrite"]] = None
    frontmatter: Optional[dict[str, Any]] = None


class VaultWriteFileArgs(ToolArgs):
    path: str = Field(min_length=1)
    content: str
    mode: Optional[Literal["overwrite", "append"]] = None
    expected_etag: Optional[str] = None


class VaultRenameArgs(ToolArgs):
    from_path: str = Field(min_length=1)
    to_path: str = Field(min_length=1)
    collision_strategy: Optional[Literal["error", "overwrite", "create-unique"]] = None


class VaultDeleteArgs(ToolArgs):
    path: str = Field(min_length=1)
    trash: bool = True
    require_exists: bool = True


class VaultSearchTextArgs(ToolArgs):
    query: str
    mode: Literal["plain", "regex"] = "plain"
    paths: Optional[list[str]] = None
    case_sensitive: Optional[bool] = None
    limit: int = Field(default=50, gt=0)
    snippet_length: int = Field(default=120, gt=0)


VAULT_ENSURE_FOLDER = ToolDef(
    name="vault.ensureFolder",
    description="Create a folder (and parents) if it does not exist.",
    args_model=VaultEnsureFolderArgs,
    category="write",
)

VAULT_LIST_FILES = ToolDef(
    name="vault.listFiles",
    description="List files and folders under a prefix.",
    args_model=VaultListFilesArgs,
)

VAULT_READ_FILE = ToolDef(
    name="vault.readFile",
    description="Read a file's content.",
    args_model=VaultReadFileArgs,
)

VAULT_CREATE_FILE = ToolDef(
    name="vault.createFile",
    description="Create a new file with content.",
    args_model=VaultCreateFileArgs,
    category="write",
)

VAULT_WRITE_FILE = ToolDef(
    name="vault.writeFile",
    description="Overwrite or append to a file.",
    args_model=VaultWriteFileArgs,
    category="write",
)

VAULT_RENAME = ToolDef(
    name="vault.rename",
    description="Move or rename a file.",
    args_model=VaultRenameArgs,
    category="write",
)

VAULT_DELETE = ToolDef(
    name="vault.delete",
    description="Delete a file, moving it to the trash by default.",
    args_model=VaultDeleteArgs,
    category="delete",
)

VAULT_SEARCH_TEXT = ToolDef(
    name="vault.searchText",
    description="Search file contents for plain text or a regex.",
    args_model=VaultSearchTextArgs,
    path_args=("path", "fromPath", "toPath", "paths"),
)

# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------


class EditorReplaceSelectionArgs(ToolArgs):
    text: str
    preserve_indent: Optional[bool] = None


class EditorInsertAtCursorArgs(ToolArgs):
    text: str


EDITOR_GET_SELECTION = ToolDef(
    name="editor.getSelection",
    description="Return the current editor selection.",
    args_model=NoArgs,
)

EDITOR_REPLACE_SELECTION = ToolDef(
    name="editor.replaceSelection",
    description="Replace the current selection with text.",
    args_model=EditorReplaceSelectionArgs,
    category="write",
)

EDITOR_INSERT_AT_CURSOR = ToolDef(
    name="editor.insertAtCursor",
    description="Insert text at the cursor.",
    args_model=EditorInsertAtCursorArgs,
    category="write",
)

EDITOR_GET_ACTIVE_FILE_PATH = ToolDef(
    name="editor.getActiveFilePath",
    description="Return the path of the active file.",
    args_model=NoArgs,
)

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceGetContextArgs(ToolArgs):
    include_open_leaves: Optional[bool] = None
    include_active_view_state: Optional[bool] = None


class WorkspaceOpenFileArgs(ToolArgs):
    path: str = Field(min_length=1)
    new_leaf: Optional[bool] = None
    focus: Optional[bool] = None


WORKSPACE_GET_CONTEXT = ToolDef(
    name="workspace.getContext",
    description="Describe the active view, open leaves and selection.",
    args_model=WorkspaceGetContextArgs,
)

WORKSPACE_OPEN_FILE = ToolDef(
    name="workspace.openFile",
    description="Open a file in the workspace.",
    args_model=WorkspaceOpenFileArgs,
)

# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class CommandsListArgs(ToolArgs):
    query: Optional[str] = None
    prefix: Optional[str] = None
    limit: Optional[int] = Field(default=None, gt=0)


class CommandsRunArgs(ToolArgs):
    id: str


COMMANDS_LIST = ToolDef(
    name="commands.list",
    description="List available commands.",
    args_model=CommandsListArgs,
)

COMMANDS_RUN = ToolDef(
    name="commands.run",
    description="Run a command by id.",
    args_model=CommandsRunArgs,
    category="command",
)

# ---------------------------------------------------------------------------
# Dataview (requires the Dataview plugin)
# ---------------------------------------------------------------------------


class DataviewQueryArgs(ToolArgs):
    dql: str
    origin_file: Optional[str] = None


class DataviewPagesArgs(ToolArgs):
    source: Optional[str] = None
    where: Optional[dict[str, Any]] = None


class DataviewTaskFilter(ToolArgs):
    completed: Optional[bool] = None
    source: Optional[str] = None
    tags: Optional[list[str]] = None
    due_before: Optional[str] = None
    due_after: Optional[str] = None


class DataviewTasksArgs(ToolArgs):
    options: Optional[DataviewTaskFilter] = None


DATAVIEW_STATUS = ToolDef(
    name="dataview.status",
    description="Report whether Dataview is available and indexed.",
    args_model=NoArgs,
)

DATAVIEW_QUERY = ToolDef(
    name="dataview.query",
    description="Run a Dataview (DQL) query.",
    args_model=DataviewQueryArgs,
)

DATAVIEW_PAGES = ToolDef(
    name="dataview.pages",
    description="List pages matching a Dataview source expression.",
    args_model=DataviewPagesArgs,
)

DATAVIEW_TASKS = ToolDef(
    name="dataview.tasks",
    description="List tasks, optionally filtered.",
    args_model=DataviewTasksArgs,
)

# ---------------------------------------------------------------------------
# Templater (requires the Templater plugin)
# ---------------------------------------------------------------------------


class TemplaterRunArgs(ToolArgs):
    template_path: str = Field(min_length=1)
    target_file: Optional[str] = None


class TemplaterInsertArgs(ToolArgs):
    template_path: str = Field(min_length=1)


class TemplaterCreateArgs(ToolArgs):
    template_path: str = Field(min_length=1)
    output_path: str = Field(min_length=1)
    open_note: Optional[bool] = None
    folder_path: Optional[str] = None


_TEMPLATE_PATHS = ("path", "fromPath", "toPath", "templatePath", "outputPath", "folderPath")

TEMPLATER_STATUS = ToolDef(
    name="templater.status",
    description="Report whether Templater is available.",
    args_model=NoArgs,
)

TEMPLATER_RUN = ToolDef(
    name="templater.run",
    description="Render a template and return the content.",
    args_model=TemplaterRunArgs,
    path_args=_TEMPLATE_PATHS,
)

TEMPLATER_INSERT = ToolDef(
    name="templater.insert",
    description="Render a template into the active editor.",
    args_model=TemplaterInsertArgs,
    category="write",
    path_args=_TEMPLATE_PATHS,
)

TEMPLATER_CREATE = ToolDef(
    name="templater.create",
    description="Create a new note from a template.",
    args_model=TemplaterCreateArgs,
    category="write",
    path_args=_TEMPLATE_PATHS,
)

# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


class UtilParseMarkdownBulletsArgs(ToolArgs):
    text: str
    allow_nested: Optional[bool] = None


class UtilSlugifyTitleArgs(ToolArgs):
    title: str
    max_length: Optional[int] = Field(default=None, gt=0)


UTIL_PARSE_MARKDOWN_BULLETS = ToolDef(
    name="util.parseMarkdownBullets",
    description="Split markdown bullet lists into items.",
    args_model=UtilParseMarkdownBulletsArgs,
)

UTIL_SLUGIFY_TITLE = ToolDef(
    name="util.slugifyTitle",
    description="Turn a title into a filename-safe slug.",
    args_model=UtilSlugifyTitleArgs,
)

# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

ALL_TOOLS: list[ToolDef] = [
    VAULT_ENSURE_FOLDER, VAULT_CREATE_FILE, VAULT_READ_FILE, VAULT_WRITE_FILE,
    VAULT_RENAME, VAULT_DELETE, VAULT_SEARCH_TEXT, VAULT_LIST_FILES,
    EDITOR_GET_SELECTION, EDITOR_REPLACE_SELECTION, EDITOR_INSERT_AT_CURSOR,
    EDITOR_GET_ACTIVE_FILE_PATH,
    WORKSPACE_OPEN_FILE, WORKSPACE_GET_CONTEXT,
    COMMANDS_LIST, COMMANDS_RUN,
    DATAVIEW_STATUS, DATAVIEW_QUERY, DATAVIEW_PAGES, DATAVIEW_TASKS,
    TEMPLATER_STATUS, TEMPLATER_RUN, TEMPLATER_INSERT, TEMPLATER_CREATE,
    UTIL_PARSE_MARKDOWN_BULLETS, UTIL_SLUGIFY_TITLE,
]

WRITE_TOOLS: list[ToolDef] = [t for t in ALL_TOOLS if t.mutates]
