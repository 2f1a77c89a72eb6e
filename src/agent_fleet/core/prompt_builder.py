"""Prompt rendering for agent sessions."""

from .task import RepoTask


def build_agent_prompt(task: RepoTask) -> str:
    """Render the instructions handed to an agent for one task."""
    context = task.context.strip() or "(none)"
    return f"""# Agent Task - {task.repo_name}

## Project
{context}

## Phase: {task.phase}
## Active Task: [{task.task_id}] {task.task_title}
## Priority: {task.priority.value}

---
Repository path: {task.repo_path}

Instructions:
1. Read relevant source files to understand the codebase
2. Implement [{task.task_id}]: {task.task_title}
3. Run tests/builds to verify
4. Commit all changes with a conventional commit message

Work autonomously. Do not ask for permission."""
