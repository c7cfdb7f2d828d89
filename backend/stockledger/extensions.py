# Overview: Flask extension instances for the database, migrations, and stock hooks.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

# Key under app.extensions holding post-commit low-stock listeners
LOW_STOCK_LISTENERS = "stockledger.low_stock_listeners"
