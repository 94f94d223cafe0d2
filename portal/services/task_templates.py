from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy.orm import Session

from portal.models import ProjectTask
from portal.services.notifications import NotificationDispatcher
from portal.services.projects import ProjectSnapshot


@dataclass(frozen=True)
class TaskTemplate:
    title: str
    description: str
    priority: str
    deadline_days: int
    estimated_hours: int


INITIAL_TASKS: tuple[TaskTemplate, ...] = (
    TaskTemplate(
        "Análise de Requisitos",
        "Levantamento e documentação detalhada dos requisitos do projeto",
        "high",
        7,
        20,
    ),
    TaskTemplate(
        "Design e Prototipagem",
        "Criação dos layouts e protótipos interativos da interface",
        "high",
        14,
        30,
    ),
    TaskTemplate(
        "Desenvolvimento",
        "Implementação das funcionalidades conforme especificações",
        "high",
        30,
        80,
    ),
    TaskTemplate(
        "Testes e QA",
        "Testes de qualidade, performance e correção de bugs",
        "medium",
        37,
        20,
    ),
    TaskTemplate(
        "Deploy e Publicação",
        "Publicação do projeto em ambiente de produção",
        "medium",
        40,
        10,
    ),
)


def build_initial_tasks(project_id: str, now: datetime) -> list[ProjectTask]:
    return [
        ProjectTask(
            project_id=project_id,
            title=template.title,
            description=template.description,
            status="pending",
            priority=template.priority,
            deadline=now + timedelta(days=template.deadline_days),
            estimated_hours=template.estimated_hours,
            created_at=now,
        )
        for template in INITIAL_TASKS
    ]


class TaskTemplateGenerator:
    """Cria o conjunto fixo de tarefas iniciais de um projeto aprovado.

    Unconditional: callers decide whether a project should get its tasks.
    """

    def __init__(
        self,
        session_factory,
        notifier: NotificationDispatcher,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.logger = structlog.get_logger().bind(service="task_templates")

    def _session(self) -> Session:
        return self.session_factory()  # type: ignore[call-arg]

    def generate_initial_tasks(self, project: ProjectSnapshot) -> list[ProjectTask]:
        tasks = build_initial_tasks(project.id, self.clock())
        session = self._session()
        try:
            session.add_all(tasks)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self.logger.info("initial_tasks_created", project_id=project.id, count=len(tasks))

        if project.user_id:
            self.notifier.notify(
                project.user_id,
                "tasks_created",
                "Tarefas Criadas",
                "As tarefas iniciais do seu projeto foram criadas. "
                "Acompanhe o progresso na área de tarefas.",
                project.id,
                {
                    "task_count": len(tasks),
                    "estimated_total_hours": sum(task.estimated_hours or 0 for task in tasks),
                },
            )
        return tasks


__all__ = ["INITIAL_TASKS", "TaskTemplate", "TaskTemplateGenerator", "build_initial_tasks"]
