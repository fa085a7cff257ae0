"""Query several resolvers, dial every returned address and keep the fastest one."""