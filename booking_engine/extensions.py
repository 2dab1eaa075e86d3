from flask_sqlalchemy import SQLAlchemy

from booking_engine.models import Base

db = SQLAlchemy(model_class=Base)
