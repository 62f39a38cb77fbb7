from fastapi import APIRouter

from apps.helpdesk.api.schemas import CategoryModel
from apps.helpdesk.dependencies.tickets import TicketServiceDep

router = APIRouter(prefix="/public", tags=["public"])


@router.get("/categories", response_model=list[CategoryModel], summary="Active ticket categories")
async def list_categories(service: TicketServiceDep) -> list[CategoryModel]:
    categories = await service.list_categories(active_only=True)
    return [CategoryModel.from_entity(category) for category in categories]
