"""Domain services invoked by the API routers."""
