"""System prompt sent to the assistant at session creation."""

from __future__ import annotations

from ralph.core.promise import tag_promise

SYSTEM_PROMPT_TEMPLATE = "\n".join(
    [
        "# Ralph Loop System Instructions",
        "",
        (
            "Please work on the task the user provides. When you try to exit, the loop"
            " will feed the SAME PROMPT back to you for the next iteration. You will see"
            " your previous work in files and git history, allowing you to iterate and"
            " improve."
        ),
        "",
        "## Completion Signal",
        "",
        "When the task is completely finished:",
        "",
        "1. **First**, create a summary of all changes.",
        (
            "2. **Then**, as the VERY LAST text you output, say this exact phrase:"
            ' "{promise}".'
        ),
        "",
        (
            "The completion signal MUST be the final text in your response. Do not add"
            " any text, explanation, or formatting after the completion phrase."
        ),
        "",
        "## Critical Rule",
        "",
        (
            "You may ONLY output the completion phrase when the task is completely and"
            " unequivocally done. Do not output false promises to escape the loop, even"
            " if you think you're stuck or should exit for other reasons. The loop is"
            " designed to continue until genuine completion."
        ),
    ]
)


def build_system_prompt(promise_phrase: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.replace("{promise}", tag_promise(promise_phrase))


def build_iteration_prompt(prompt: str, iteration: int, max_iterations: int) -> str:
    """Prefix the task prompt with the ``[Iteration i/max]`` marker."""
    return f"[Iteration {iteration}/{max_iterations}]\n\n{prompt}"
