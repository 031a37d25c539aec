# run.py
from mercadoboom.config import Config
from mercadoboom.main import app

if __name__ == "__main__":
    app.run(
        debug=Config.DEBUG,
        host=Config.FLASK_RUN_HOST,
        port=Config.FLASK_RUN_PORT,
    )
