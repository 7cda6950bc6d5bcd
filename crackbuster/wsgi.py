from crackbuster import create_app

app = create_app()
