"""api/ -- HTTP layer: FastAPI app, middleware, request/response models, routes.

Layer rule: api/ may import from auth/ and core/. Nothing imports from api/.
"""
