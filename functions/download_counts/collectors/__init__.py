# Download count collection: request gate, work queue and fetch workers
