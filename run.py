# run.py
# Main entry point to start the Flask development server.

import os
from dotenv import load_dotenv

# Load environment variables from .env file, if it exists
# Useful for storing API_KEY, FHIR_SERVER_URL or TAG_SYSTEM locally
dotenv_path = os.path.join(os.path.dirname(__file__), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)
    print("Loaded environment variables from .env file.")
else:
    print(".env file not found, using default config or environment variables.")

# Imported after load_dotenv so Config picks up the environment
from app import create_app  # noqa: E402

flask_app = create_app()


if __name__ == '__main__':
    # debug=True enables auto-reloading and detailed error pages (DO NOT use in production)
    print("Starting Flask development server...")
    port = int(os.environ.get('PORT', 5000))
    flask_app.run(host='0.0.0.0', port=port, debug=True)
