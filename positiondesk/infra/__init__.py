from positiondesk.infra.desk_client import DeskClient

__all__ = [
    "DeskClient",
]
