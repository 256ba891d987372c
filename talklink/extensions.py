from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

BINDINGS_KEY = 'talk_bindings'


def get_binding_registry():
    """Return the BindingRegistry owned by the current app."""
    return current_app.extensions[BINDINGS_KEY]
