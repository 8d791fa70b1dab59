"""xhub web layer: settings, storage engines, routes and views."""
