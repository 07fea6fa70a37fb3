#!/usr/bin/env python3
"""Start the PhotoLister API server."""
import uvicorn

if __name__ == "__main__":
    uvicorn.run("photolister.main:app", host="0.0.0.0", port=8080, reload=True)
