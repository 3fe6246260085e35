# Overview: Flask extension instances for database, migrations and the secret codec.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .crypto import SecretCodec

db = SQLAlchemy()
migrate = Migrate()
codec = SecretCodec()
