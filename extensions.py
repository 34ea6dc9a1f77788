"""Extension singletons for the subsidy API; create_app binds them to the app."""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

db = SQLAlchemy()
migrate = Migrate()
# Bearer-token auth only: no session cookies, no login view.
login_manager = LoginManager()
