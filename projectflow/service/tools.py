from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from projectflow.logging import get_logger
from projectflow.service.errors import NotFoundError
from projectflow.service.middleware import AuthenticationContext
from projectflow.storage.models import Project, Task

logger = get_logger(__name__)

TASK_STATUSES = ("todo", "in_progress", "blocked", "done")
RESOURCE_SCHEME = "projectflow://"
PROJECTS_URI = f"{RESOURCE_SCHEME}projects"

TaskStatus = Literal["todo", "in_progress", "blocked", "done"]


class ProjectRepository(Protocol):
    def create_project(
        self, owner_id: str, name: str, description: Optional[str] = None
    ) -> Project: ...

    def list_projects(self, owner_id: str) -> List[Project]: ...

    def get_project(self, owner_id: str, project_id: str) -> Optional[Project]: ...

    def create_task(
        self,
        owner_id: str,
        project_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        priority: int = 0,
    ) -> Task: ...

    def list_tasks(
        self, owner_id: str, project_id: str, *, status: Optional[str] = None
    ) -> List[Task]: ...

    def update_task(self, owner_id: str, task_id: str, **changes) -> Optional[Task]: ...


class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateProjectArgs(ToolArguments):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ListProjectsArgs(ToolArguments):
    pass


class ProjectRefArgs(ToolArguments):
    project_id: str = Field(min_length=1)


class CreateTaskArgs(ToolArguments):
    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: int = Field(default=0, ge=0, le=5)


class ListTasksArgs(ToolArguments):
    project_id: str = Field(min_length=1)
    status: Optional[TaskStatus] = None


class UpdateTaskArgs(ToolArguments):
    task_id: str = Field(min_length=1)
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    status: Optional[TaskStatus] = None
    priority: Optional[int] = Field(default=None, ge=0, le=5)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    arguments: type[ToolArguments]
    scope: str
    run: Callable[[str, Any], Any]

    def describe(self) -> Dict[str, Any]:
        schema = self.arguments.model_json_schema()
        schema.pop("title", None)
        return {"name": self.name, "description": self.description, "inputSchema": schema}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def project_to_dict(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "created_at": _iso(project.created_at),
    }


def task_to_dict(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "project_id": task.project_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


def text_content(payload: Any) -> Dict[str, Any]:
    return {"type": "text", "text": json.dumps(payload, ensure_ascii=False, indent=2)}


class ProjectTools:
    """The ``pm.*`` tool catalog plus the resources and prompts built on it.

    Every call runs on behalf of ``user_id``, taken from the authenticated
    context and never from client supplied arguments.
    """

    def __init__(self, repo: ProjectRepository) -> None:
        self.repo = repo
        self.catalog: Dict[str, ToolSpec] = {
            spec.name: spec
            for spec in (
                ToolSpec(
                    "pm.create_project",
                    "Create a project owned by the caller.",
                    CreateProjectArgs,
                    "projects:write",
                    self._create_project,
                ),
                ToolSpec(
                    "pm.list_projects",
                    "List the caller's projects.",
                    ListProjectsArgs,
                    "projects:read",
                    self._list_projects,
                ),
                ToolSpec(
                    "pm.get_project",
                    "Fetch one project by id.",
                    ProjectRefArgs,
                    "projects:read",
                    self._get_project,
                ),
                ToolSpec(
                    "pm.create_task",
                    "Add a task to a project.",
                    CreateTaskArgs,
                    "tasks:write",
                    self._create_task,
                ),
                ToolSpec(
                    "pm.list_tasks",
                    "List tasks in a project, highest priority first.",
                    ListTasksArgs,
                    "tasks:read",
                    self._list_tasks,
                ),
                ToolSpec(
                    "pm.update_task",
                    "Change a task's title, description, status or priority.",
                    UpdateTaskArgs,
                    "tasks:write",
                    self._update_task,
                ),
                ToolSpec(
                    "pm.get_context",
                    "Summarise a project: tasks grouped by status and the suggested next task.",
                    ProjectRefArgs,
                    "projects:read",
                    self._get_context,
                ),
            )
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        return [spec.describe() for spec in self.catalog.values()]

    def call(
        self, name: str, arguments: Dict[str, Any], context: AuthenticationContext
    ) -> Dict[str, Any]:
        """Run tool ``name``; raises KeyError for unknown tools.

        Argument validation errors propagate as pydantic ``ValidationError``.
        Domain failures come back as an ``isError`` result rather than a
        protocol error.
        """
        spec = self.catalog[name]
        args = spec.arguments.model_validate(arguments)
        # Identity tokens speak for the human directly; OAuth tokens carry granted scopes
        if context.token_kind == "opaque" and spec.scope not in context.scopes:
            logger.info("tool_scope_denied", tool=name, user_id=context.user_id, required=spec.scope)
            return {
                "content": [text_content({"error": "insufficient_scope", "required": spec.scope})],
                "isError": True,
            }
        try:
            payload = spec.run(context.user_id, args)
        except NotFoundError as exc:
            return {"content": [text_content({"error": exc.message})], "isError": True}
        logger.info("tool_called", tool=name, user_id=context.user_id)
        return {"content": [text_content(payload)], "isError": False}

    def _require_project(self, user_id: str, project_id: str) -> Project:
        project = self.repo.get_project(user_id, project_id)
        if project is None:
            raise NotFoundError("project not found", detail={"project_id": project_id})
        return project

    def _create_project(self, user_id: str, args: CreateProjectArgs) -> Dict[str, Any]:
        return project_to_dict(self.repo.create_project(user_id, args.name, args.description))

    def _list_projects(self, user_id: str, args: ListProjectsArgs) -> Dict[str, Any]:
        return {"projects": [project_to_dict(p) for p in self.repo.list_projects(user_id)]}

    def _get_project(self, user_id: str, args: ProjectRefArgs) -> Dict[str, Any]:
        return project_to_dict(self._require_project(user_id, args.project_id))

    def _create_task(self, user_id: str, args: CreateTaskArgs) -> Dict[str, Any]:
        self._require_project(user_id, args.project_id)
        task = self.repo.create_task(
            user_id,
            args.project_id,
            args.title,
            description=args.description,
            priority=args.priority,
        )
        return task_to_dict(task)

    def _list_tasks(self, user_id: str, args: ListTasksArgs) -> Dict[str, Any]:
        self._require_project(user_id, args.project_id)
        tasks = self.repo.list_tasks(user_id, args.project_id, status=args.status)
        return {"tasks": [task_to_dict(t) for t in tasks]}

    def _update_task(self, user_id: str, args: UpdateTaskArgs) -> Dict[str, Any]:
        changes = args.model_dump(exclude={"task_id"}, exclude_none=True)
        task = self.repo.update_task(user_id, args.task_id, **changes)
        if task is None:
            raise NotFoundError("task not found", detail={"task_id": args.task_id})
        return task_to_dict(task)

    def _get_context(self, user_id: str, args: ProjectRefArgs) -> Dict[str, Any]:
        return self.project_context(user_id, args.project_id)

    def project_context(self, user_id: str, project_id: str) -> Dict[str, Any]:
        project = self._require_project(user_id, project_id)
        tasks = self.repo.list_tasks(user_id, project_id)
        by_status: Dict[str, List[Dict[str, Any]]] = {status: [] for status in TASK_STATUSES}
        for task in tasks:
            by_status.setdefault(task.status, []).append(task_to_dict(task))
        # list_tasks is already ordered by priority
        next_task = next((t for t in tasks if t.status == "todo"), None)
        return {
            "project": project_to_dict(project),
            "tasks_by_status": by_status,
            "next_task": task_to_dict(next_task) if next_task else None,
        }

    # Resources

    def list_resources(self, user_id: str) -> List[Dict[str, Any]]:
        resources = [
            {
                "uri": PROJECTS_URI,
                "name": "projects",
                "description": "All projects owned by the caller",
                "mimeType": "application/json",
            }
        ]
        for project in self.repo.list_projects(user_id):
            resources.append(
                {
                    "uri": f"{PROJECTS_URI}/{project.id}",
                    "name": project.name,
                    "description": "Project with its tasks",
                    "mimeType": "application/json",
                }
            )
        return resources

    def read_resource(self, user_id: str, uri: str) -> Dict[str, Any]:
        """Return the JSON document behind ``uri``; raises NotFoundError."""
        if uri == PROJECTS_URI:
            payload: Dict[str, Any] = self._list_projects(user_id, ListProjectsArgs())
        elif uri.startswith(PROJECTS_URI + "/"):
            project_id = uri[len(PROJECTS_URI) + 1 :]
            if not project_id or "/" in project_id:
                raise NotFoundError("unknown resource", detail={"uri": uri})
            payload = self.project_context(user_id, project_id)
        else:
            raise NotFoundError("unknown resource", detail={"uri": uri})
        return {
            "uri": uri,
            "mimeType": "application/json",
            "text": json.dumps(payload, ensure_ascii=False),
        }

    # Prompts

    def list_prompts(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": "plan_next_task",
                "description": "Ask the agent to pick and plan the next task in a project.",
                "arguments": [
                    {"name": "project_id", "description": "Project to plan for", "required": True}
                ],
            }
        ]

    def get_prompt(self, user_id: str, name: str, arguments: Dict[str, str]) -> Dict[str, Any]:
        if name != "plan_next_task":
            raise NotFoundError("unknown prompt", detail={"name": name})
        project_id = arguments.get("project_id") or ""
        context = self.project_context(user_id, project_id)
        text = (
            f"You are helping with the project \"{context['project']['name']}\".\n"
            "Here is its current state as JSON:\n"
            f"{json.dumps(context, ensure_ascii=False, indent=2)}\n\n"
            "Choose the task that should be worked on next, explain why, and "
            "break it into concrete steps. Use pm.update_task to mark it in_progress "
            "when you start."
        )
        return {
            "description": "Plan the next task",
            "messages": [{"role": "user", "content": {"type": "text", "text": text}}],
        }
