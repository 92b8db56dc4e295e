"""Remote agent module manifest: tool definitions."""

from shared.schemas.tools import ModuleManifest, ToolDefinition, ToolParameter

MANIFEST = ModuleManifest(
    module_name="remote_agent",
    description=(
        "Run coding tasks in sandboxed agent containers on the remote execution host, "
        "with one persistent workspace per task."
    ),
    tools=[
        ToolDefinition(
            name="remote_agent.run_task",
            description=(
                "Dispatch a coding task to a new agent container on the remote host. "
                "Returns task_id and container_id immediately; progress is streamed to the chat "
                "channel and the final result is recorded on the task. Re-using a task_id re-uses "
                "that task's workspace."
            ),
            parameters=[
                ToolParameter(
                    name="prompt",
                    type="string",
                    description="Natural-language description of the coding task.",
                    required=True,
                ),
                ToolParameter(
                    name="task_id",
                    type="string",
                    description="Logical task identifier. Omit to start a new task.",
                    required=False,
                ),
                ToolParameter(
                    name="workspace_name",
                    type="string",
                    description="Preferred human-readable name for a new workspace directory.",
                    required=False,
                ),
                ToolParameter(
                    name="new_workspace",
                    type="boolean",
                    description="Create a fresh primary workspace even if the task already has one.",
                    required=False,
                ),
                ToolParameter(
                    name="repo_url",
                    type="string",
                    description="Git repository to clone into a new workspace.",
                    required=False,
                ),
                ToolParameter(
                    name="branch",
                    type="string",
                    description="Branch to clone (with repo_url).",
                    required=False,
                ),
                ToolParameter(
                    name="create_repo",
                    type="boolean",
                    description="Create a GitHub repository for a new empty workspace.",
                    required=False,
                ),
                ToolParameter(
                    name="repo_visibility",
                    type="string",
                    description="Visibility of a created repository.",
                    enum=["private", "public"],
                    required=False,
                ),
                ToolParameter(
                    name="context_files",
                    type="array",
                    description="Files in the workspace the agent should read first.",
                    required=False,
                ),
                ToolParameter(
                    name="requirements",
                    type="array",
                    description="Acceptance requirements appended to the prompt.",
                    required=False,
                ),
                ToolParameter(
                    name="max_iterations",
                    type="integer",
                    description="Iteration cap communicated to the agent.",
                    required=False,
                ),
                ToolParameter(
                    name="timeout",
                    type="integer",
                    description="Wall-clock limit in seconds (default 600).",
                    required=False,
                ),
            ],
        ),
        ToolDefinition(
            name="remote_agent.stop_agent",
            description="Stop and remove a running agent container.",
            parameters=[
                ToolParameter(name="container_id", type="string", description="Agent container id.", required=True),
            ],
        ),
        ToolDefinition(
            name="remote_agent.agent_status",
            description="Report whether an agent container is running, with its recent output.",
            parameters=[
                ToolParameter(name="container_id", type="string", description="Agent container id.", required=True),
            ],
        ),
        ToolDefinition(
            name="remote_agent.list_agents",
            description="List agent containers on the remote host.",
            parameters=[],
        ),
        ToolDefinition(
            name="remote_agent.agent_logs",
            description="Return the last lines of an agent container's log.",
            parameters=[
                ToolParameter(name="container_id", type="string", description="Agent container id.", required=True),
                ToolParameter(
                    name="tail",
                    type="integer",
                    description="Number of lines (default 100).",
                    required=False,
                ),
            ],
        ),
        ToolDefinition(
            name="remote_agent.cleanup_containers",
            description="Remove exited agent containers.",
            parameters=[],
            required_permission="admin",
        ),
        ToolDefinition(
            name="remote_agent.list_workspaces",
            description=(
                "List workspaces. With task_id, lists that task's workspace records; "
                "otherwise lists directories under the remote workspace root."
            ),
            parameters=[
                ToolParameter(name="task_id", type="string", description="Logical task identifier.", required=False),
            ],
        ),
        ToolDefinition(
            name="remote_agent.archive_workspace",
            description="Mark a task's workspace as archived.",
            parameters=[
                ToolParameter(name="task_id", type="string", description="Logical task identifier.", required=True),
                ToolParameter(
                    name="workspace_path",
                    type="string",
                    description="Archive only this workspace (default: all active).",
                    required=False,
                ),
            ],
        ),
        ToolDefinition(
            name="remote_agent.cleanup_workspaces",
            description="Delete workspaces of failed tasks older than the orphan threshold.",
            parameters=[],
            required_permission="admin",
        ),
        ToolDefinition(
            name="remote_agent.push_workspace",
            description="Commit pending changes in a task's workspace and push to origin.",
            parameters=[
                ToolParameter(name="task_id", type="string", description="Logical task identifier.", required=True),
                ToolParameter(name="message", type="string", description="Commit message.", required=False),
                ToolParameter(name="branch", type="string", description="Branch to push (default main).", required=False),
                ToolParameter(name="force", type="boolean", description="Force push.", required=False),
            ],
        ),
        ToolDefinition(
            name="remote_agent.create_branch",
            description="Create a branch in a task's workspace and publish it to origin.",
            parameters=[
                ToolParameter(name="task_id", type="string", description="Logical task identifier.", required=True),
                ToolParameter(name="branch", type="string", description="New branch name.", required=True),
            ],
        ),
    ],
)
