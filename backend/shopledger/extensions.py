# Overview: Flask extension instances for database, migrations and cache.

from flask_caching import Cache
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()
cache = Cache()
