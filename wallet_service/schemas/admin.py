# wallet_service/schemas/admin.py
from pydantic import BaseModel, Field


class TaskInfo(BaseModel):
    task_name: str
    description: str


class TaskRunRequest(BaseModel):
    task_name: str = Field(..., description="Имя задачи из реестра или 'all'")


class OrderCompletedPayload(BaseModel):
    """Тело внутреннего вебхука от сервиса заказов."""
    user_id: int
    order_id: int
