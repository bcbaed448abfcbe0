# agentrelay/core/arguments.py
"""
Argument builders for the agent CLIs.

Pure functions: the same conversation state, prompt, attachments and
memories always produce the same argv. Nothing here touches the process
table or the conversation.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from agentrelay.core.continuity import ContinuityPlan
from agentrelay.core.execution_mode import mode_allows_writes, resolve_conversation_execution_mode
from agentrelay.core.models import Attachment, Conversation, MemoryNote

logger = logging.getLogger(__name__)

MEMORY_PROMPT_FILE = Path(__file__).resolve().parent.parent / "config" / "memory_prompt.txt"
FALLBACK_MEMORY_TEMPLATE = "# User Memories\n\n{{GLOBAL_MEMORIES}}\n{{PROJECT_MEMORIES}}"

SANDBOX_ALLOWED_DOMAINS = ["github.com", "*.npmjs.org", "registry.yarnpkg.com", "api.github.com"]
SANDBOX_DENY_READS = [
    "Read(**/.env)",
    "Read(**/.env.*)",
    "Read(**/credentials.json)",
    "Read(~/.ssh/**)",
    "Read(~/.aws/**)",
    "Read(~/.config/**)",
]

COMPRESSED_CONTEXT_TEMPLATE = """[COMPRESSED CONVERSATION CONTEXT]
The following is a summary of earlier messages in this conversation that have been compressed to save context space:

{summary}

[END COMPRESSED CONTEXT]

Please continue the conversation naturally, using the above context as background information."""

_MULTI_BLANK_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class Invocation:
    """argv (binary first) plus the final prompt text it carries."""
    argv: List[str]
    prompt: str

    @property
    def binary(self) -> str:
        return self.argv[0]


# ----------------------------------------------------------------------
# Memories
# ----------------------------------------------------------------------

def enabled_memories(memories: Optional[Iterable[MemoryNote]]) -> List[MemoryNote]:
    return [m for m in (memories or []) if m.enabled is not False]


def load_memory_template(path: Path = MEMORY_PROMPT_FILE) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return FALLBACK_MEMORY_TEMPLATE


def format_memories_for_prompt(memories: Sequence[MemoryNote], template: Optional[str] = None) -> str:
    """Render memories into the system-prompt template (Global + Project-specific)."""
    if template is None:
        template = load_memory_template()
    global_notes = [m for m in memories if m.is_global]
    project_notes = [m for m in memories if not m.is_global]

    global_section = ""
    if global_notes:
        global_section = "## Global\n" + "\n".join(f"- {m.text}" for m in global_notes)
    project_section = ""
    if project_notes:
        project_section = "## Project-specific\n" + "\n".join(f"- {m.text}" for m in project_notes)

    text = (
        template
        .replace("{{GLOBAL_MEMORIES}}", global_section, 1)
        .replace("{{PROJECT_MEMORIES}}", project_section, 1)
    )
    text = _MULTI_BLANK_RE.sub("\n\n", text).strip()
    return "\n" + text


def format_inline_memories(memories: Sequence[MemoryNote]) -> str:
    """Memory block appended to the prompt for CLIs without a system-prompt flag."""
    sections = []
    global_notes = [m for m in memories if m.is_global]
    project_notes = [m for m in memories if not m.is_global]
    if global_notes:
        sections.append("Global:\n" + "\n".join(f"- {m.text}" for m in global_notes))
    if project_notes:
        sections.append("Project-specific:\n" + "\n".join(f"- {m.text}" for m in project_notes))
    if not sections:
        return ""
    return "\n\n[User memories]\n" + "\n\n".join(sections) + "\n[/User memories]"


# ----------------------------------------------------------------------
# Attachments
# ----------------------------------------------------------------------

def append_attachment_directives(prompt: str, attachments: Optional[Sequence[Attachment]]) -> str:
    images = [a for a in (attachments or []) if a.path and a.is_image]
    files = [a for a in (attachments or []) if a.path and not a.is_image]
    if images:
        plural = len(images) > 1
        paths = "\n".join(a.path for a in images)
        prompt += (
            f"\n\n[Attached image{'s' if plural else ''} — view by reading "
            f"{'these files' if plural else 'this file'}:]\n{paths}"
        )
    if files:
        plural = len(files) > 1
        paths = "\n".join(a.path for a in files)
        prompt += f"\n\n[Attached file{'s' if plural else ''} — read for context:]\n{paths}"
    return prompt


def upload_dir_for(upload_dir: Optional[str], conversation_id: str) -> Optional[str]:
    if not upload_dir:
        return None
    return os.path.join(upload_dir, conversation_id)


# ----------------------------------------------------------------------
# Sandbox policy
# ----------------------------------------------------------------------

def build_sandbox_settings(cwd: Optional[str], allow_writes: bool) -> Dict[str, Any]:
    # Leading "/" on top of an absolute cwd gives the "//abs/path" form the
    # CLI reads as an absolute rule.
    allow = [f"Edit(/{cwd}/**)", f"Write(/{cwd}/**)"] if allow_writes and cwd else []
    return {
        "sandbox": {
            "enabled": True,
            "autoAllowBashIfSandboxed": True,
            "allowUnsandboxedCommands": False,
            "network": {"allowedDomains": list(SANDBOX_ALLOWED_DOMAINS)},
        },
        "permissions": {
            "allow": allow,
            "deny": list(SANDBOX_DENY_READS),
        },
    }


# ----------------------------------------------------------------------
# Claude CLI
# ----------------------------------------------------------------------

def build_claude_invocation(
    conv: Conversation,
    plan: ContinuityPlan,
    attachments: Optional[Sequence[Attachment]] = None,
    memories: Optional[Sequence[MemoryNote]] = None,
    upload_dir: Optional[str] = None,
    default_model: str = "sonnet",
    binary: str = "claude",
) -> Invocation:
    allow_writes = mode_allows_writes(resolve_conversation_execution_mode(conv))
    prompt = append_attachment_directives(plan.prompt_text, attachments)

    argv = [
        binary,
        "-p", prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--model", conv.model or default_model,
        "--include-partial-messages",
    ]

    notes = enabled_memories(memories)
    if notes:
        argv += ["--append-system-prompt", format_memories_for_prompt(notes)]

    if conv.sandboxed is not False or not allow_writes:
        argv += ["--settings", json.dumps(build_sandbox_settings(conv.cwd, allow_writes))]
        if conv.cwd:
            argv += ["--add-dir", conv.cwd]
    elif conv.autopilot is not False:
        argv.append("--dangerously-skip-permissions")

    if plan.session_id:
        argv += ["--resume", plan.session_id]
    elif not plan.inline_history:
        summary = conv.compression_summary()
        if summary is not None:
            argv += [
                "--append-system-prompt",
                COMPRESSED_CONTEXT_TEMPLATE.format(summary=summary.text),
            ]

    uploads = upload_dir_for(upload_dir, conv.id)
    if attachments and uploads:
        argv += ["--add-dir", uploads]

    return Invocation(argv=argv, prompt=prompt)


# ----------------------------------------------------------------------
# Codex CLI
# ----------------------------------------------------------------------

def build_codex_invocation(
    conv: Conversation,
    plan: ContinuityPlan,
    attachments: Optional[Sequence[Attachment]] = None,
    memories: Optional[Sequence[MemoryNote]] = None,
    upload_dir: Optional[str] = None,
    known_models: Iterable[str] = (),
    default_model: str = "gpt-5.3-codex",
    binary: str = "codex",
) -> Invocation:
    """
    ``codex exec [resume <id>] [flags] <prompt>``; flags before the prompt.

    ``exec resume`` rejects -C, -s and --add-dir.
    """
    known = set(known_models)
    model = conv.model if conv.model in known else default_model
    is_resume = bool(plan.session_id)

    argv = [binary, "exec"]
    if is_resume:
        argv += ["resume", plan.session_id]
    argv.append("--json")
    if model:
        argv += ["-m", model]
    if not is_resume and conv.cwd:
        argv += ["-C", conv.cwd]
    argv.append("--skip-git-repo-check")

    if is_resume:
        if conv.sandboxed is False and conv.autopilot is not False:
            argv.append("--dangerously-bypass-approvals-and-sandbox")
    elif conv.sandboxed is not False or conv.autopilot is False:
        argv += ["-s", "workspace-write"]
    else:
        argv.append("--dangerously-bypass-approvals-and-sandbox")

    for image in (a for a in (attachments or []) if a.is_image):
        argv += ["-i", image.path]

    uploads = upload_dir_for(upload_dir, conv.id)
    if not is_resume and attachments and uploads:
        argv += ["--add-dir", uploads]

    prompt = plan.prompt_text + format_inline_memories(enabled_memories(memories))
    argv.append(prompt)
    return Invocation(argv=argv, prompt=prompt)


def estimate_display_tokens(text: str) -> int:
    """Rough token estimate (4 chars/token) of the user-typed prompt."""
    if not text:
        return 0
    return max(1, -(-len(text) // 4))
