"""Building VM images described as a forest of configurations."""