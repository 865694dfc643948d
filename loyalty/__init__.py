import os
from flask import Flask
from dotenv import load_dotenv
from flask_cors import CORS
from loyalty.routes.admin import bp as admin_bp
from loyalty.routes.cron import bp as cron_bp
from loyalty.routes.loyalty import bp as loyalty_bp
from loyalty.routes.passes import bp as passes_bp
from loyalty.routes.program import bp as program_bp
import logging
load_dotenv()


def create_app():

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")

    CORS(app, resources={
        r"/api/*": {
            "origins": "*",
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-City"]
        }
    })

    level = os.getenv("level") or "info"

    logging.basicConfig(
        level=logging.DEBUG if level == "debug" else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # schema is managed by Alembic (migrations/)

    app.register_blueprint(program_bp, url_prefix="/api/loyalty/program")
    app.register_blueprint(admin_bp, url_prefix="/api/loyalty/admin")
    app.register_blueprint(passes_bp, url_prefix="/api/loyalty/pass")
    app.register_blueprint(loyalty_bp, url_prefix="/api/loyalty")
    app.register_blueprint(cron_bp, url_prefix="/api/cron")

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
