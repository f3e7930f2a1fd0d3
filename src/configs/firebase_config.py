import firebase_admin
from firebase_admin import credentials
import os

from src.configs.settings import FIREBASE_CREDENTIALS_PATH


def initialize_firebase():
    """
    Initialise the Firebase Admin SDK used to verify bearer tokens.
    Reads FIREBASE_CREDENTIALS_PATH, or serviceAccountKey.json at the repo root.
    """
    if firebase_admin._apps:
        return firebase_admin.get_app()

    path = FIREBASE_CREDENTIALS_PATH
    if not path:
        CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
        # src/configs/ -> project root
        BASE_DIR = os.path.abspath(os.path.join(CURRENT_DIR, "../../"))
        path = os.path.join(BASE_DIR, "serviceAccountKey.json")

    return firebase_admin.initialize_app(credentials.Certificate(path))
