from app.docportal import create_app

app = create_app()
