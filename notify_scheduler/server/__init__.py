from notify_scheduler.server.main import create_app

__all__ = ["create_app"]
