from ledgerflow.api.routes import router as v1_router

__all__ = ["v1_router"]
