# ibtasim/services: business logic shared by blueprints and CLI commands
