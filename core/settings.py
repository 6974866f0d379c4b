import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARREGAR VARIÁVEIS DE AMBIENTE ---
# Lê o .env da raiz do projeto
load_dotenv(BASE_DIR / '.env')

# --- SEGURANÇA ---
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-inseguro-troque-em-producao')
DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

CSRF_TRUSTED_ORIGINS = [u for u in os.getenv('TRUSTED_ORIGINS', '').split(',') if u]
CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Emissor NFS-e Nacional
    'nfse',
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
WSGI_APPLICATION = 'core.wsgi.application'

LANGUAGE_CODE = 'pt-br'
TIME_ZONE = 'America/Sao_Paulo'
USE_I18N = True
USE_TZ = True

# --- Banco de dados ---
# MySQL quando DATABASE_NAME estiver no .env; SQLite local caso contrário.
if os.getenv('DATABASE_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.mysql',
            'NAME': os.getenv('DATABASE_NAME'),
            'USER': os.getenv('DATABASE_USER'),
            'PASSWORD': os.getenv('DATABASE_PASSWORD'),
            'HOST': os.getenv('DATABASE_HOST', 'localhost'),
            'PORT': os.getenv('DATABASE_PORT', '3306'),
            'OPTIONS': {
                'charset': 'utf8mb4',
                'init_command': "SET sql_mode='STRICT_TRANS_TABLES'",
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# --- Templates (admin) ---
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

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------------------------------
# NFS-e Nacional (Sefin)
# -------------------------------------------------
# Chave AES-256 (64 caracteres hex) para a senha dos certificados.
# Conferida só no uso: sem ela a aplicação sobe, mas não emite.
NFSE_ENCRYPTION_KEY = os.getenv('NFSE_ENCRYPTION_KEY', '')

NFSE_SEFIN_TIMEOUT = int(os.getenv('NFSE_SEFIN_TIMEOUT', 30))
# Produção restrita usa certificado de cadeia própria; em produção sempre se verifica.
NFSE_SANDBOX_VERIFY_SSL = os.getenv('NFSE_SANDBOX_VERIFY_SSL', 'False').lower() == 'true'

NFSE_POLL_MAX_TENTATIVAS = int(os.getenv('NFSE_POLL_MAX_TENTATIVAS', 3))
NFSE_POLL_BACKOFF = float(os.getenv('NFSE_POLL_BACKOFF', 3))
NFSE_ESPERA_PENDENTE = float(os.getenv('NFSE_ESPERA_PENDENTE', 5))

NFSE_VERSAO_APLICACAO = os.getenv('NFSE_VERSAO_APLICACAO', 'NFSeAPI_v1.0')
NFSE_DIAS_ALERTA_CERTIFICADO = int(os.getenv('NFSE_DIAS_ALERTA_CERTIFICADO', 30))
NFSE_DIAS_EMISSAO_ANTIGA = int(os.getenv('NFSE_DIAS_EMISSAO_ANTIGA', 30))

# --- Celery ---
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() == 'true'
CELERY_BEAT_SCHEDULE = {
    'nfse-reconsultar-pendentes': {
        'task': 'nfse.tasks.reconsultar_pendentes_task',
        'schedule': 60 * 10,
    },
    'nfse-verificar-certificados': {
        'task': 'nfse.tasks.verificar_certificados_task',
        'schedule': 60 * 60 * 24,
    },
}

# --- LOGGING ---
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'django.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
        },
        'nfse_file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'nfse.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 10,
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': True,
        },
        'nfse': {
            'handlers': ['console', 'nfse_file'],
            'level': os.getenv('NFSE_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
