# api/__init__.py
# ============================================================================
# CAYMAN <-> MINDBODY BRIDGE - HTTP SURFACE
# ============================================================================
# FastAPI routers (webhooks, checkout) and the app factory in api.server
# ============================================================================
