def clean_config(mcmc_config):
    """
    Cleans the config dict and sets defaults.
    All config keys use lowercase with underscores.
    """
    mcmc_config = dict(mcmc_config or {})

    mcmc_config.setdefault('nburn', 5000)
    mcmc_config.setdefault('nsave', 1000)
    mcmc_config.setdefault('nskip', 1)
    mcmc_config.setdefault('ndisplay', 1000)
    mcmc_config.setdefault('seed', 0)
    mcmc_config.setdefault('use_double', True)
    mcmc_config.setdefault('max_cholesky_tries', 8)
    mcmc_config.setdefault('fallback_warning_threshold', 1)
    mcmc_config.setdefault('dump_path', None)

    for name in ('nburn', 'nsave', 'nskip', 'ndisplay', 'seed', 'max_cholesky_tries'):
        mcmc_config[name] = int(mcmc_config[name])

    return mcmc_config
