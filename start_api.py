#!/usr/bin/env python3
"""
Billing API Startup Script

Starts the billing FastAPI server (Stripe webhooks, checkout, premium status).
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the billing API server."""
    print("Starting billing API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   Webhook URL: http://localhost:8000/webhooks/stripe")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with these variables:")
        print("   DATABASE_URL=sqlite:///./billing.db")
        print("   JWT_SECRET=your-secret-key-here")
        print("   STRIPE_SECRET_KEY=sk_test_...")
        print("   STRIPE_WEBHOOK_SECRET=whsec_...")
        print("")

    if "--init-db" in sys.argv:
        from tutor_billing.database import init_db
        init_db()
        print("Created missing billing tables")

    try:
        uvicorn.run(
            "tutor_billing.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["tutor_billing"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down billing API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
