# wallet_service/routers/v1/endpoints/admin/tasks.py

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from wallet_service.channel.manager import ConnectionManager
from wallet_service.dependencies import get_connection_manager
from wallet_service.schemas.admin import TaskInfo, TaskRunRequest
from wallet_service.tasks_registry import TASKS, get_tasks_list

logger = logging.getLogger(__name__)

# Префикс /tasks будет добавлен на уровне выше в admin/__init__.py
router = APIRouter()


@router.get("", response_model=List[TaskInfo])
def get_tasks_list_endpoint():
    """
    [АДМИН] Возвращает список всех доступных для ручного запуска фоновых задач.
    """
    return get_tasks_list()


@router.post("/run", status_code=status.HTTP_202_ACCEPTED)
async def run_task_endpoint(
    request_data: TaskRunRequest,
    background_tasks: BackgroundTasks,
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    [АДМИН] Запускает одну конкретную фоновую задачу или все сразу ('all').
    """
    task_name_to_run = request_data.task_name

    if task_name_to_run == "all":
        for data in TASKS.values():
            # FastAPI сам разберется, как запустить sync/async функцию
            background_tasks.add_task(data["function"], manager)
        message = "All background tasks have been scheduled to run."
        logger.info("All background tasks were manually triggered.")

    elif task_name_to_run in TASKS:
        background_tasks.add_task(TASKS[task_name_to_run]["function"], manager)
        message = f"Task '{task_name_to_run}' has been scheduled to run."
        logger.info(f"Background task '{task_name_to_run}' was manually triggered.")
    else:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task '{task_name_to_run}' not found.")

    return {"status": "accepted", "message": message}
