from .mutations import router as mutations_router
from .views import router as views_router
from .notifications import router as notifications_router

# (router, prefix, tag)
all_routers = [
    (mutations_router, "/mutations", "Mutations"),
    (views_router, "/views", "Views"),
    (notifications_router, "/notifications", "Notifications"),
]
