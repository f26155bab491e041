"""Local development entry point.

Usage:
    python run.py

Point the SePay IPN URL / Stripe webhook endpoint at a tunnel (ngrok,
cloudflared) exposing this port, e.g. https://<tunnel-host>/sepay/ipn.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from reconciler import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
