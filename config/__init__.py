"""Static catalogs shared by the backend."""
