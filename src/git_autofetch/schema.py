"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_BATCH_OPTIONS = {
    "json": {
        "type": "boolean",
        "description": "Output as JSON for machine parsing",
        "default": False,
    },
    "sequential": {
        "type": "boolean",
        "description": "Run one repository at a time instead of in parallel",
        "default": False,
    },
    "workers": {
        "type": "integer",
        "description": "Maximum parallel git processes (default: one per repository, capped at 32)",
    },
}


def _directory_list_tool(kind: str) -> dict:
    return {
        "name": kind,
        "description": (
            f"Manage the {kind}d directories list. "
            + (
                "When non-empty, only these directories are operated on and the projects directory is ignored."
                if kind == "include"
                else "Repositories equal to or nested under these paths are skipped when scanning the projects directory."
            )
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "remove", "show", "clear"],
                    "description": "List operation to perform",
                },
                "path": {
                    "type": "string",
                    "description": "Directory path (required for add and remove)",
                },
            },
            "required": ["action"],
        },
    }


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "git-autofetch",
        "version": __version__,
        "description": "Fetch all Git repositories under a projects directory and pull them when it is safe. Repositories are discovered by scanning the configured projects directory (minus excluded directories) or taken from an explicit included list. Config lives in $GIT_AUTOFETCH_CONFIG or ~/.config/git-autofetch/config.json.",
        "usage": "git-autofetch <command> [options]",
        "tools": [
            {
                "name": "set-projects-directory",
                "description": "Set the root folder that is scanned for Git repositories.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Existing directory"},
                    },
                    "required": ["path"],
                },
            },
            {
                "name": "fetch",
                "description": "Fetch every repository and classify it as up to date, changes fetched, dirty working tree or error. Never modifies working trees.",
                "inputSchema": {"type": "object", "properties": dict(_BATCH_OPTIONS)},
            },
            {
                "name": "pull",
                "description": "Fetch every repository, then merge upstream changes only into clean repositories that are behind. Repositories whose local and upstream changes overlap are reported as would conflict and left untouched.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        **_BATCH_OPTIONS,
                        "silent": {
                            "type": "boolean",
                            "description": "Only print repositories that need attention",
                            "default": False,
                        },
                        "dry_run": {
                            "type": "boolean",
                            "description": "Show what would be pulled without merging",
                            "default": False,
                        },
                    },
                },
            },
            {
                "name": "status",
                "description": "Classify every repository from local state without contacting remotes.",
                "inputSchema": {"type": "object", "properties": dict(_BATCH_OPTIONS)},
            },
            {
                "name": "list",
                "description": "List the repositories the other commands would operate on.",
                "inputSchema": {
                    "type": "object",
                    "properties": {"json": _BATCH_OPTIONS["json"]},
                },
            },
            _directory_list_tool("include"),
            _directory_list_tool("exclude"),
        ],
        "outcomes": {
            "up_to_date": "Nothing to fetch or pull",
            "fetched_changes": "Upstream has commits the local branch does not",
            "pulled_cleanly": "Upstream commits were merged without conflicts",
            "would_conflict": "Merging would conflict; left for manual resolution",
            "dirty_working_tree": "Uncommitted changes to tracked files; never pulled",
            "error": "The git command failed (network, authentication, detached HEAD, ...)",
        },
    }
