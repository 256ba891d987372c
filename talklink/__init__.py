from flask import Flask
from talklink.config import DevelopmentConfig
from talklink.extensions import db, migrate, BINDINGS_KEY
from talklink.logging_config import setup_logging
from talklink.services.binding_service import BindingRegistry
from talklink.services.talk_service import TalkService
from talklink.utils.decorators import collect_warning, reset_warnings
from talklink.utils.timestamps import set_default_timezone

def create_app(config_class=DevelopmentConfig):
    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logging(app.config.get('LOG_LEVEL', 'INFO'), app.config.get('TALK_DEBUG_LOGGING', False))
    set_default_timezone(app.config.get('TIMEZONE'))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # One binding table per app; the service is rebuilt per call so
    # settings changes apply immediately
    app.extensions[BINDINGS_KEY] = BindingRegistry(
        service_factory=lambda: TalkService.from_config(app.config),
        warn=collect_warning,
    )

    # Register Blueprints
    from talklink.api.routes.appointments import appointments_bp
    from talklink.api.routes.talk import talk_bp

    app.register_blueprint(appointments_bp, url_prefix='/api/appointments')
    app.register_blueprint(talk_bp, url_prefix='/api/talk')
    app.before_request(reset_warnings)

    @app.route('/health')
    def health():
        return {"status": "ok", "app": "TalkLink"}

    return app
