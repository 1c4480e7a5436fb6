from calsync.services.calendar.google_client import GoogleProvider
from calsync.services.calendar.graph_client import GraphProvider
from calsync.services.calendar.remote_client import RemoteCalendarProvider

PROVIDERS: dict[str, type[RemoteCalendarProvider]] = {
    GraphProvider.name: GraphProvider,
    GoogleProvider.name: GoogleProvider,
}


def get_provider(name: str, app_settings=None) -> RemoteCalendarProvider:
    """Instantiate the calendar provider configured for this deployment."""
    try:
        provider_cls = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown calendar provider: {name}") from None
    return provider_cls(app_settings)
