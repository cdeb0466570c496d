"""Fetching, configuring and building kernels kept in a directory."""