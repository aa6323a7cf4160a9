"""Terminal front-ends for browsing stored courses."""
