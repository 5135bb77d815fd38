#!/usr/bin/env python3
"""Runner script to start the backend server."""
import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "dashuav.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
    )
