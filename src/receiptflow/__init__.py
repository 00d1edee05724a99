"""Receiptflow - personal receipt analytics dashboard backend"""

__version__ = "0.1.0"

def main() -> None:
    """Main entry point for the application"""
    import uvicorn
    from .config import get_config, setup_logging

    config = get_config()
    setup_logging(config)
    uvicorn.run("receiptflow.app:app", host=config.HOST, port=config.PORT, reload=config.is_development)
