# Routers module for Property Invites API
from app.routers import invites
from app.routers import rollout
