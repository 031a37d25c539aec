from .admin import admin_bp
from .auth import auth_bp
from .catalog import catalog_bp
from .payments import payments_bp
from .security import security_bp
from .support import support_bp

ALL_BLUEPRINTS = (auth_bp, security_bp, catalog_bp, payments_bp, admin_bp, support_bp)

__all__ = ["ALL_BLUEPRINTS"]
