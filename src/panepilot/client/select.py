"""Interactive multi-select and confirmation prompts."""

from __future__ import annotations

import logging
from typing import Sequence

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.shortcuts import checkboxlist_dialog  # type: ignore

logger = logging.getLogger(__name__)

CONFIRM_LABELS = {
    "send_keys": "Send keys",
    "exec": "Execute",
    "paste": "Paste",
}


async def select_names(
    candidates: Sequence[str],
    preselected: Sequence[str] = (),
    *,
    title: str = "Select MCP servers",
) -> list[str] | None:
    """Return the chosen names, or None when the dialog is cancelled."""

    chosen = [name for name in preselected if name in candidates]
    dialog = checkboxlist_dialog(
        title=title,
        text="Space toggles, Enter confirms.",
        values=[(name, name) for name in candidates],
        default_values=chosen,
    )
    result = await dialog.run_async()
    if result is None:
        return None
    return list(result)


async def confirm_action(kind: str, description: str) -> bool:
    """Ask the user to approve one pane action; Enter means yes."""

    label = CONFIRM_LABELS.get(kind, kind)
    preview = description if "\n" not in description else f"\n{description}\n"
    session: PromptSession = PromptSession()
    try:
        answer = await session.prompt_async(f"{label}: {preview} [Y/n] ")
    except (EOFError, KeyboardInterrupt):
        return False
    approved = answer.strip().lower() in {"", "y", "yes"}
    logger.info("confirm.%s approved=%s", kind, approved)
    return approved
