"""System prompts and initial context for each job kind."""

from __future__ import annotations

from agent_dispatch.orchestrator.payload import JobPayload

_TOOLS_SECTION = """\
## Tools

- `read_file(path)`: read a file relative to the repository root.
- `run_command(cmd)`: run an allowlisted command (linters, tests, grep, ls, git status/diff).
- `post_comment(body)`: post a comment on the change under review.
- `approve()`: approve the change.
- `request_changes(reason)`: request changes with an explanation.
- `finish(result)`: end the job. `result` is an object with `decision`
  (approve | request_changes | comment | fixed | no_action), `summary`, and `issues`.

Commands outside the allowlist are rejected with a `Forbidden:` observation;
adapt and continue. You must call `finish` exactly once when you are done.
"""

REVIEW_SYSTEM_PROMPT = f"""\
You are a code reviewer. Review the change and provide constructive feedback.

Be collegial and direct. State the issue and the fix in two or three sentences.
Focus on bugs and logic errors, security issues with a concrete attack vector,
and performance problems. Only comment on things you are certain about; do not
comment on formatting, style, or correct code.

If a project guideline file `REVIEW.md` exists, read it first.
If the change has no significant issues, approve it.

{_TOOLS_SECTION}"""

SENTRY_FIX_SYSTEM_PROMPT = f"""\
You are investigating a production error report. Find the root cause in the
repository, make the smallest safe fix, run the relevant linters and tests,
and commit the fix on the working branch. If the error cannot be fixed from
this repository, explain why in the finish summary.

{_TOOLS_SECTION}"""

JIRA_TICKET_SYSTEM_PROMPT = f"""\
You are implementing a ticket. Read the relevant code, implement the requested
change following the project's conventions, run linters and tests, and commit
on the working branch. Summarize what changed in the finish result.

{_TOOLS_SECTION}"""

SYSTEM_PROMPTS: dict[str, str] = {
    "review": REVIEW_SYSTEM_PROMPT,
    "sentry_fix": SENTRY_FIX_SYSTEM_PROMPT,
    "jira_ticket": JIRA_TICKET_SYSTEM_PROMPT,
}

_MAX_DIFF_CHARS = 60_000


def system_prompt_for(kind: str) -> str:
    return SYSTEM_PROMPTS.get(kind, REVIEW_SYSTEM_PROMPT)


def build_initial_context(
    payload: JobPayload,
    *,
    diff: str = "",
    changed_files: list[str] | None = None,
) -> str:
    """Render the first user message of a session."""

    lines = [
        f"# {payload.kind.replace('_', ' ').title()}: {payload.title or payload.project}",
        "",
        f"Project: {payload.project}",
    ]
    if payload.branch:
        lines.append(f"Branch: {payload.branch}")
    if payload.target_branch:
        lines.append(f"Target branch: {payload.target_branch}")
    if payload.author:
        lines.append(f"Author: {payload.author}")
    if payload.targets:
        lines.append(f"Targets: {', '.join(payload.targets)}")
    if payload.description:
        lines.extend(["", "## Description", "", payload.description.strip()])
    if payload.prompt:
        lines.extend(["", "## Instructions", "", payload.prompt.strip()])
    if changed_files:
        lines.extend(["", "## Changed files", ""])
        lines.extend(f"- {path}" for path in changed_files)
    if diff:
        shown = diff[:_MAX_DIFF_CHARS]
        lines.extend(["", "## Diff", "", "```diff", shown.rstrip(), "```"])
        if len(diff) > _MAX_DIFF_CHARS:
            lines.append(f"(diff truncated, {len(diff) - _MAX_DIFF_CHARS} more characters)")
    return "\n".join(lines) + "\n"
