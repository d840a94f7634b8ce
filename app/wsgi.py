from app.irdesk import create_app

app = create_app()
