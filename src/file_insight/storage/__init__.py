"""SQLite persistence shared by the file store and the job queue."""
