"""fortune_batch.services -- Stores, jobs, scheduler and launcher."""
