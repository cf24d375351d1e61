import sys
import os

from dotenv import load_dotenv

# Add your project directory to the sys.path
project_home = '/home/yourusername/documents-service'
if project_home not in sys.path:
    sys.path.insert(0, project_home)

# Set environment variable for Flask
os.environ['FLASK_ENV'] = 'production'

# Load environment variables before config.Config reads them
dotenv_path = os.path.join(project_home, '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)

# Import your Flask app
from app import create_app

application = create_app()
