import os
import uvicorn
from mfa_gateway.core.config import GATEWAY_HOST, GATEWAY_PORT, SSL_ENABLED, SSL_CERT, SSL_KEY, LOG_LEVEL

# This file is just a shim to run the app
if __name__ == "__main__":

    # Check if SSL files exist
    if SSL_ENABLED and (not os.path.exists(SSL_CERT) or not os.path.exists(SSL_KEY)):
        print(f"WARNING: SSL cert/key not found at {SSL_CERT}/{SSL_KEY}")

    # Run server
    uvicorn.run(
        "mfa_gateway.main:app",
        host=GATEWAY_HOST,
        port=GATEWAY_PORT,
        ssl_keyfile=SSL_KEY if (SSL_ENABLED and os.path.exists(SSL_KEY)) else None,
        ssl_certfile=SSL_CERT if (SSL_ENABLED and os.path.exists(SSL_CERT)) else None,
        log_level=LOG_LEVEL.lower(),
        proxy_headers=True,
        reload=False
    )
