from flask import Blueprint

api_bp = Blueprint('api', __name__, url_prefix='/api')

# Import all route modules to register them
from . import routes

# Register sub-blueprints
from .transaction_routes import transaction_api_bp
from .adjustment_routes import inventory_api_bp
from .count_routes import count_api_bp
from .reconciliation_routes import reconciliation_api_bp
from .sync_routes import sync_api_bp

api_bp.register_blueprint(transaction_api_bp)
api_bp.register_blueprint(inventory_api_bp)
api_bp.register_blueprint(count_api_bp)
api_bp.register_blueprint(reconciliation_api_bp)
api_bp.register_blueprint(sync_api_bp)
