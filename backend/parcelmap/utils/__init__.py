"""Small, dependency-light helpers shared by services and routers."""
