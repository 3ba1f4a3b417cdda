from classifieds import create_app
from classifieds.celery_app import create_celery_app

# Worker entrypoint: celery -A celery_app:celery worker --beat
flask_app = create_app()
celery = create_celery_app(flask_app)
