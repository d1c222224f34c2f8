"""Instructions handed to the worker on each iteration."""

from kanban_orchestrator.core.output import COMPLETION_MARKER, NEED_INPUT_MARKER


def task_prompt(requirements: str) -> str:
    """Full instruction for the first iteration of a job."""
    return (
        f"You are an autonomous coding agent. Your task is to implement the following "
        f"PRD (Product Requirements Document):\n\n"
        f"---\n"
        f"{requirements}\n"
        f"---\n\n"
        f"IMPORTANT INSTRUCTIONS:\n"
        f"1. Read and understand the PRD carefully\n"
        f"2. Implement the requirements step by step\n"
        f"3. Write tests if appropriate\n"
        f"4. Run tests to verify your implementation\n"
        f"5. When you are completely done, output exactly: \"{COMPLETION_MARKER}\"\n"
        f"6. If you encounter a blocker or need clarification, output: "
        f"\"{NEED_INPUT_MARKER} \" followed by your question\n\n"
        f"Start by exploring the codebase to understand the project structure, "
        f"then implement the requirements."
    )


def continue_prompt() -> str:
    return (
        f"Continue working on the task. If you are done, say \"{COMPLETION_MARKER}\". "
        f"If you need human input, say \"{NEED_INPUT_MARKER} \" followed by your question."
    )


def resume_prompt(response: str, requirements: str | None = None) -> str:
    """Instruction carrying the human's answer to a blocked job.

    Without a prior conversation to resume, the requirements are repeated so
    the worker still has the full task.
    """
    parts = []
    if requirements is not None:
        parts.append(task_prompt(requirements))
        parts.append("")
    parts.append(f"The human responded to your question:\n\n{response}\n")
    parts.append(continue_prompt())
    return "\n".join(parts)
