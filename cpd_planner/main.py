import logging

from fastapi import FastAPI

from cpd_planner.config import settings
from cpd_planner.routers import demand, distribution, production

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='CPD Production Planner')

app.include_router(demand.router)
app.include_router(production.router)
app.include_router(distribution.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
