"""
Opportunity Pipeline API

FastAPI application serving /api/opportunities.
"""
