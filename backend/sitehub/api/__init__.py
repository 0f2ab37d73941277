"""API router subpackage for the site hub backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - imports: Shapefile import and the boundary (intersecting sites) query.
    - projects: Attribute catalog, project attribute selection and the
      clustered geometry view.

Endpoints are plain ``def`` functions so FastAPI runs the blocking
psycopg2 and GDAL work in its threadpool.
"""
