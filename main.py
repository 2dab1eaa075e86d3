import logging
import os

from dotenv import load_dotenv
from flasgger import Swagger
from flask import Flask
from flask_cors import CORS

from swagger__config import SWAGGER_CONFIG, SWAGGER_TEMPLATE

load_dotenv()
from booking_engine.api.booking.appointments import appointments_bp  # noqa: E402
from booking_engine.api.booking.availability import availability_bp  # noqa: E402
from booking_engine.api.payments.payments import payments_bp  # noqa: E402
from booking_engine.config import Config  # noqa: E402
from booking_engine.extensions import db  # noqa: E402
from booking_engine.services.engine import init_booking_engine  # noqa: E402

logger = logging.getLogger("booking_engine")


def configure_logging(level=logging.INFO):
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


def create_app(config_overrides=None, clock=None, card_gateway=None):
    configure_logging()
    app = Flask(__name__)
    try:
        app.config.from_object(Config)
        if config_overrides:
            app.config.update(config_overrides)
        logger.info(f"Config loaded: {len(app.config)} items")

        CORS(app)
        db.init_app(app)

        # Determine host based on environment
        host = os.environ.get("API_HOST", "127.0.0.1:5000")
        swagger_template = SWAGGER_TEMPLATE.copy()
        swagger_template["host"] = host
        Swagger(app, config=SWAGGER_CONFIG, template=swagger_template)
        logger.info("Swagger initialized - Access at /api/docs")

        init_booking_engine(app, clock=clock, card_gateway=card_gateway)

        blueprints = [
            availability_bp,
            appointments_bp,
            payments_bp,
        ]
        for bp in blueprints:
            app.register_blueprint(bp)
            logger.info(f"  ✓ {bp.name} registered")

        @app.route("/")
        def home():
            """
            Root endpoint - API status
            ---
            tags:
              - Utility
            responses:
              200:
                description: API is running
                schema:
                  type: object
                  properties:
                    status:
                      type: string
                    message:
                      type: string
            """
            return {"status": "ok", "message": "Booking engine is running!"}, 200

        if app.config.get("SCHEDULER_ENABLED"):
            from booking_engine.scheduler import init_scheduler

            init_scheduler(app)

        logger.info(f"Total routes registered: {len(list(app.url_map.iter_rules()))}")

    except Exception as e:
        logger.exception(f"Error during app creation: {e}")
        raise

    return app


app = create_app()


if __name__ == "__main__":
    # Create a .env containing:
    #       MYSQL_PUBLIC_URL= mysql+pymysql://<USER>:<PASSWORD>@<HOST>:<PORT>/salon_booking  # noqa: E501
    port = int(os.environ.get("PORT", 5000))
    app.run(
        host="0.0.0.0", port=port, debug=os.environ.get("FLASK_ENV") != "production"
    )
