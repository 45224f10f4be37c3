"""Public HTTP routers."""
