#!/usr/bin/env python3
"""
Entry point for the ONU polling service.
"""

if __name__ == "__main__":
    import uvicorn
    from onu_poller.core.config import settings

    uvicorn.run(
        "onu_poller.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        log_level="info"
    )
