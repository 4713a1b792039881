"""Router package -- one APIRouter per domain, included by app.py."""

from routers.onboarding import router as onboarding_router
from routers.forms import router as forms_router
from routers.settings import router as settings_router
from routers.whatsapp import router as whatsapp_router

all_routers = [
    onboarding_router,
    forms_router,
    settings_router,
    whatsapp_router,
]
