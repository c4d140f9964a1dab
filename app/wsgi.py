from app.custody import create_app

app = create_app()
