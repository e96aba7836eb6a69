from .client import PortalClient
from .config import PortalSettings, bootstrap_local_env
from .gateway import ConsultationGateway, ConsultationPage, Lookup
from .session import RequestScopedSession, StaticSession

__all__ = [
    "ConsultationGateway",
    "ConsultationPage",
    "Lookup",
    "PortalClient",
    "PortalSettings",
    "RequestScopedSession",
    "StaticSession",
    "bootstrap_local_env",
]
