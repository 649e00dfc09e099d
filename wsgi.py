from app import create_app, init_database
from scheduler import start_scheduler

app = create_app()
init_database(app)
start_scheduler(app)
