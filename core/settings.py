from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'x402pay',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': env.str('DATABASE_ENGINE', 'django.db.backends.postgresql'),
        'NAME': env.str(
            'PGSQL_DATABASE_FACILITATOR',
            env.str('PGSQL_DATABASE', 'x402_nonce_facilitator'),
        ),
        'USER': env.str('PGSQL_USER', 'postgres'),
        'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
        'HOST': env.str('PGSQL_HOST', 'localhost'),
        'PORT': env.int('PGSQL_PORT', 5432),
    }
}


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}

# Fee policy: 'percentage' takes floor(total * X402_FEE_PERCENTAGE),
# 'fixed' takes X402_FIXED_FEE_AMOUNT minimal units per payment.
X402_FEE_MODE = env.str('X402_FEE_MODE', 'percentage')
X402_FEE_PERCENTAGE = env.str('X402_FEE_PERCENTAGE', '0.4')
X402_FIXED_FEE_AMOUNT = env.int('X402_FIXED_FEE_AMOUNT', 12500)
X402_FEE_DESCRIPTION = env.str('X402_FEE_DESCRIPTION', 'platform fee')
X402_PRIMARY_DESCRIPTION = env.str('X402_PRIMARY_DESCRIPTION', '')
X402_PLATFORM_ADDRESS = env.str('X402_PLATFORM_ADDRESS', '')

X402_SIMULATE_TRANSACTIONS = env.bool('X402_SIMULATE_TRANSACTIONS', APP_ENV != 'production')
X402_SOLANA_RPC_URL = env.str('X402_SOLANA_RPC_URL', 'https://api.mainnet-beta.solana.com')
X402_SOLANA_SIGNER_PRIVATE_KEY = env.str('X402_SOLANA_SIGNER_PRIVATE_KEY', '')
# Empty settles native SOL; an SPL mint settles TransferChecked between token accounts.
X402_TOKEN_MINT = env.str('X402_TOKEN_MINT', '')
X402_TX_TIMEOUT_SECONDS = env.int('X402_TX_TIMEOUT_SECONDS', 60)

X402_NONCE_TTL_SECONDS = env.int('X402_NONCE_TTL_SECONDS', 3600)
X402_MAX_NONCE_TTL_SECONDS = env.int('X402_MAX_NONCE_TTL_SECONDS', 86400)
X402_NONCE_RETRY_LIMIT = env.int('X402_NONCE_RETRY_LIMIT', 5)
X402_MAX_PAYMENT_AMOUNT = env.int('X402_MAX_PAYMENT_AMOUNT', 0)
X402_CLEANUP_INTERVAL_SECONDS = env.int('X402_CLEANUP_INTERVAL_SECONDS', 3600)
