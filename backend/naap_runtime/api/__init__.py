"""HTTP surface: application factory and routers."""
