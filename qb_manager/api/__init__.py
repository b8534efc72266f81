from .main import app, create_app
