#!/usr/bin/env python3
"""
Run script for the POSQ restaurant backend.
This script initializes the database and starts the Flask application.
"""

import os
import sys
from app import app
from init_db import init_database

def main():
    print("Starting POSQ Restaurant POS...")
    print("Initializing database...")

    # Create tables and the demo branch when missing
    init_database()

    port = int(os.getenv('PORT', 5000))
    print("Starting Flask server...")
    print(f"API base URL: http://localhost:{port}/api")
    print(f"Printer service expected at {app.config['PRINTER_SERVICE_URL']}")
    print("Press Ctrl+C to stop the server")

    # Run the application
    app.run(debug=os.getenv('FLASK_DEBUG', '1') == '1', host='0.0.0.0', port=port, threaded=True)

if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\nShutting down server...")
        sys.exit(0)
