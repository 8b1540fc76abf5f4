# Overview: Flask extension instances for the order store and its migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()

# SQLite cannot ALTER constraints in place (order_locks' unique order_id);
# batch mode lets autogenerated migrations rebuild the table instead.
migrate = Migrate(render_as_batch=True)
