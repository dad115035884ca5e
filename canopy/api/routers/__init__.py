"""HTTP routers mounted by :func:`canopy.api.app.create_app`."""
