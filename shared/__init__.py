"""Configuration, logging and persistence shared by the API, worker and engine."""
