from opencode_companion.api.routes import register_companion_routes

__all__ = ["register_companion_routes"]
