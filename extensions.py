"""Flask extensions shared by the app factory and the mirror storage backend."""

from flask_sqlalchemy import SQLAlchemy

# Bound in create_app(); holds the device-local mirror_storage_entries table.
db = SQLAlchemy()
